from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, EmailStr

from chessarena.core.config import settings

class UserModel(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    username: str = Field(min_length=1, max_length=50)
    email: Optional[EmailStr] = None
    rating: int = settings.DEFAULT_RATING
    is_admin: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True
        validate_assignment = True
