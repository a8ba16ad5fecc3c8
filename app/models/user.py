"""
Tablemate — User and UserPreferences models.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(
        String, unique=True, index=True, nullable=False
    )
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    city: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    preferences: Mapped["UserPreferences"] = relationship(
        "UserPreferences", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User {self.username!r} id={self.id}>"


class UserPreferences(Base):
    """Questionnaire answers used by the preference-based compatibility scorer.

    Each JSONB column is a free-form mapping of answer key to a value or a
    list of values, e.g. ``{"cuisines": ["thai", "italian"], "pace": "slow"}``.
    """

    __tablename__ = "user_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    dining_preferences: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    social_preferences: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    atmosphere_preferences: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    interests: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    dietary_restrictions: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", back_populates="preferences")

    def as_dict(self) -> dict:
        return {
            "dining_preferences": self.dining_preferences or {},
            "social_preferences": self.social_preferences or {},
            "atmosphere_preferences": self.atmosphere_preferences or {},
            "interests": self.interests or {},
        }

    def __repr__(self) -> str:
        return f"<UserPreferences user={self.user_id}>"
