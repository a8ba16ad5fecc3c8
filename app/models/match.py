"""
Tablemate — Persisted pairwise compatibility scores.
"""

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class MatchScore(Base):
    """One row per unordered user pair, stored with ``user1_id < user2_id``."""

    __tablename__ = "match_scores"
    __table_args__ = (
        UniqueConstraint("user1_id", "user2_id", name="uq_match_score_pair"),
        CheckConstraint("user1_id < user2_id", name="ck_match_score_ordered"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user1_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user2_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    compatibility_score: Mapped[float] = mapped_column(
        Float, nullable=False, comment="0-100, symmetric"
    )
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"<MatchScore {self.user1_id} <-> {self.user2_id} "
            f"score={self.compatibility_score:.1f}>"
        )
