from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_CANCELLED = "CANCELLED"


def _new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    # naive UTC, sqlite drops tzinfo anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Participant(Base):
    __tablename__ = "participants"
    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    bib_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    registration_status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_PENDING)
    has_jersey: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    race_pack: Mapped["RacePack | None"] = relationship(
        back_populates="participant", cascade="all, delete-orphan", uselist=False
    )
    bib_changes: Mapped[list["BibChange"]] = relationship(
        back_populates="participant", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # NULLs don't collide, so unassigned participants are fine
        UniqueConstraint("bib_number", name="uq_participant_bib"),
        Index("ix_participants_category", "category"),
    )


class RacePack(Base):
    __tablename__ = "race_packs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[str] = mapped_column(
        ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    qr_code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    has_bib: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    has_jersey: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    collected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    participant: Mapped["Participant"] = relationship(back_populates="race_pack")


class BibChange(Base):
    __tablename__ = "bib_changes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_id: Mapped[str] = mapped_column(ForeignKey("participants.id", ondelete="CASCADE"), nullable=False)
    old_value: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_value: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)  # assigned | repair
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    participant: Mapped["Participant"] = relationship(back_populates="bib_changes")

    __table_args__ = (Index("ix_bib_changes_participant", "participant_id"),)
