"""UserProfile model: local copy of the auth provider's user id and email."""

from sqlalchemy import Column, DateTime, String

from tablexport.db.base import Base, utcnow


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(String(255), primary_key=True)  # Supabase auth user id
    email = Column(String(320), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
