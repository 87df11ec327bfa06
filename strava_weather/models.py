import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text, TypeDecorator
from sqlalchemy.orm import relationship

from .database import Base
from .services.token_vault import TokenDecryptionError, get_token_vault

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class EncryptedString(TypeDecorator):
    """Stored as vault ciphertext, decrypted on load."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return get_token_vault().encrypt(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return get_token_vault().decrypt(value)
        except TokenDecryptionError:
            # Upstream will reject it with a 401 and the user has to reconnect
            logger.warning("Stored token could not be decrypted")
            return value


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    strava_athlete_id = Column(String, unique=True, index=True, nullable=False)
    access_token = Column(EncryptedString, nullable=False)
    refresh_token = Column(EncryptedString, nullable=False)
    token_expires_at = Column(DateTime, nullable=False)
    weather_enabled = Column(Boolean, nullable=False, default=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    profile_image_url = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    country = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    preferences = relationship(
        "UserPreference", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or "Strava User"


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    temperature_unit = Column(String, nullable=False, default="celsius")  # celsius, fahrenheit
    weather_format = Column(String, nullable=False, default="detailed")  # detailed, simple
    include_uv_index = Column(Boolean, nullable=False, default=False)
    include_visibility = Column(Boolean, nullable=False, default=False)
    custom_format = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="preferences")
