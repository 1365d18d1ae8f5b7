from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from chessarena.core.database import Base

class DocumentRecord(Base):
    __tablename__ = "documents"

    collection = Column(String, primary_key=True) # "games", "tournaments", "users"
    id = Column(String, primary_key=True)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=True) # Mirrors data["status"] so sweeps can filter in SQL
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_documents_collection_status", "collection", "status"),
    )
