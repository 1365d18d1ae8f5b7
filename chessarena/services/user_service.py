import logging
from typing import Dict, Iterable, Optional

from chessarena.core.config import settings
from chessarena.core.errors import InvalidStateError, NotFoundError
from chessarena.models.user_model import UserModel
from chessarena.services.store import USERS, DocumentStore

logger = logging.getLogger(__name__)

class UserService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def create_user(self, user_data: UserModel) -> UserModel:
        # Username and email must be unique across the collection
        for doc in self.store.find(USERS):
            if doc.data.get("username") == user_data.username:
                raise InvalidStateError(f"Username {user_data.username} is already taken.",
                                        context={"username": user_data.username})
            if user_data.email and doc.data.get("email") == user_data.email:
                raise InvalidStateError(f"User with email {user_data.email} already exists.",
                                        context={"email": user_data.email})

        self.store.insert(USERS, user_data.id, user_data.model_dump(mode="json"))
        logger.info("Created user %s (%s)", user_data.id, user_data.username)
        return user_data

    def get_user(self, user_id: str) -> UserModel:
        doc = self.store.get(USERS, user_id)
        if doc is None:
            raise NotFoundError("User not found", context={"user_id": user_id})
        return UserModel(**doc.data)

    def get_users(self, user_ids: Iterable[str]) -> Dict[str, UserModel]:
        docs = self.store.get_many(USERS, user_ids)
        return {user_id: UserModel(**doc.data) for user_id, doc in docs.items()}

    def is_admin(self, user_id: str) -> bool:
        doc = self.store.get(USERS, user_id)
        return bool(doc and doc.data.get("is_admin"))

    def ratings(self, user_ids: Iterable[str]) -> Dict[str, int]:
        """Current rating per id; unknown users get the default rating."""
        ids = list(user_ids)
        users = self.get_users(ids)
        return {user_id: users[user_id].rating if user_id in users else settings.DEFAULT_RATING
                for user_id in ids}

    def adjust_rating(self, user_id: str, delta: int) -> Optional[UserModel]:
        def apply(data):
            data["rating"] = data.get("rating", settings.DEFAULT_RATING) + delta
            return data

        try:
            doc = self.store.update(USERS, user_id, apply)
        except NotFoundError:
            logger.warning("Skipping rating change for unknown user %s", user_id)
            return None
        return UserModel(**doc.data)
