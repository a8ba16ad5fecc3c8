"""
Tablemate — Meetup and MeetupParticipant models.

A meetup is the persisted, reservable form of one dining group.
"""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class Meetup(Base):
    __tablename__ = "meetups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    restaurant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    start_time: Mapped[str] = mapped_column(String, nullable=False, comment="HH:MM")
    end_time: Mapped[str] = mapped_column(String, nullable=False, comment="HH:MM")
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="scheduled", comment="pending / scheduled / cancelled"
    )
    created_by: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    participants: Mapped[list["MeetupParticipant"]] = relationship(
        "MeetupParticipant", back_populates="meetup", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Meetup {self.id} {self.title!r} max={self.max_participants}>"


class MeetupParticipant(Base):
    __tablename__ = "meetup_participants"
    __table_args__ = (
        UniqueConstraint("meetup_id", "user_id", name="uq_meetup_participant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    meetup_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("meetups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String, nullable=False, default="pending", comment="pending / confirmed / cancelled"
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    meetup: Mapped["Meetup"] = relationship("Meetup", back_populates="participants")

    def __repr__(self) -> str:
        return f"<MeetupParticipant meetup={self.meetup_id} user={self.user_id} {self.status!r}>"
