import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String

from ..database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Identity(Base):
    """SQLAlchemy model for an authenticable login identity."""

    __tablename__ = "identities"

    id = Column(String(36), primary_key=True, default=_new_id)
    login = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
