from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .bibs import BibRangeConfig, RangeExhausted, allocate, get_range, is_valid, valid_values
from .db import Database
from .racepack import racepack_code
from .schemas import ParticipantCreate

logger = logging.getLogger(__name__)


class NotFound(ValueError):
    pass


class BibAssignmentConflict(RuntimeError):
    """Lost the race for a bib on every attempt; transient, safe to retry later."""

    def __init__(self, category: str, attempts: int):
        self.category = category
        self.attempts = attempts
        super().__init__(f"Could not assign a {category} bib after {attempts} attempts, try again")


# ---------------------------
# Participant store
# ---------------------------

def create_participant(session: Session, payload: ParticipantCreate, ranges: BibRangeConfig) -> models.Participant:
    get_range(payload.category, ranges)
    p = models.Participant(
        full_name=payload.full_name.strip(),
        email=payload.email.strip(),
        category=payload.category,
        has_jersey=payload.has_jersey,
        registration_status=models.STATUS_PENDING,
    )
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def get_participant(session: Session, participant_id: str) -> models.Participant:
    p = session.get(models.Participant, participant_id)
    if not p:
        raise NotFound("Participant not found")
    return p


def list_participants(session: Session, category: Optional[str] = None) -> list[models.Participant]:
    q = select(models.Participant).order_by(models.Participant.created_at.asc(), models.Participant.id.asc())
    if category:
        q = q.where(models.Participant.category == category)
    return session.execute(q).scalars().all()


def cancel_participant(session: Session, participant_id: str) -> None:
    """Cancel a registration; its bib is released for reuse by the gap scan."""
    p = get_participant(session, participant_id)
    p.registration_status = models.STATUS_CANCELLED
    p.bib_number = None
    session.commit()


def fetch_assigned_values(session: Session, category: str) -> list[str]:
    """Every bib recorded for ``category``, unfiltered."""
    return session.execute(
        select(models.Participant.bib_number).where(
            models.Participant.category == category,
            models.Participant.bib_number.is_not(None),
        )
    ).scalars().all()


def fetch_occupied_values(session: Session, category: str, ranges: BibRangeConfig) -> set[int]:
    """Numbers inside ``category``'s range that are taken by anyone.

    Bibs are unique across the whole store, so a number held by a runner of
    another category still blocks this one.
    """
    values = session.execute(
        select(models.Participant.bib_number).where(models.Participant.bib_number.is_not(None))
    ).scalars().all()
    return valid_values(values, category, ranges)


def conditionally_persist(session: Session, participant: models.Participant, value: str) -> bool:
    """Write ``value`` as the participant's bib; False if another row holds it.

    On conflict the whole transaction is rolled back and the caller starts
    its read-allocate-write cycle again.
    """
    participant.bib_number = value
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        return False
    return True


def preview_next_bib(session: Session, category: str, ranges: BibRangeConfig) -> str:
    snapshot = fetch_occupied_values(session, category, ranges)
    return allocate(category, snapshot, ranges)


# ---------------------------
# Bib assignment
# ---------------------------

def assign_bib(
    db: Database,
    participant_id: str,
    ranges: BibRangeConfig,
    *,
    max_attempts: int = 5,
    backoff_seconds: float = 0.05,
    on_assigned: Callable[[Session, models.Participant, Optional[str]], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Give the participant a bib, retrying the read-allocate-write cycle on conflict.

    Each attempt is its own transaction. ``on_assigned`` runs inside that
    transaction before commit so related rows land atomically with the bib.
    A participant that already holds a valid bib keeps it.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    for attempt in range(max_attempts):
        with db.session() as session:
            p = get_participant(session, participant_id)
            if is_valid(p.bib_number, p.category, ranges):
                return p.bib_number
            old_value = p.bib_number
            category = p.category

            snapshot = fetch_occupied_values(session, category, ranges)
            candidate = allocate(category, snapshot, ranges)

            if conditionally_persist(session, p, candidate):
                session.add(models.BibChange(
                    participant_id=p.id, old_value=old_value, new_value=candidate, reason="assigned",
                ))
                if on_assigned is not None:
                    on_assigned(session, p, old_value)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                else:
                    logger.info("Assigned bib %s to participant %s (%s)", candidate, participant_id, category)
                    return candidate

        logger.warning(
            "Bib %s for %s was taken concurrently (attempt %d/%d)", candidate, category, attempt + 1, max_attempts
        )
        if attempt + 1 < max_attempts:
            sleep(backoff_seconds * (2 ** attempt))

    raise BibAssignmentConflict(category, max_attempts)


def _ensure_race_pack(session: Session, p: models.Participant, old_value: Optional[str]) -> None:
    p.registration_status = models.STATUS_CONFIRMED
    code = racepack_code(p.bib_number, p.id)
    if p.race_pack is None:
        session.add(models.RacePack(participant_id=p.id, qr_code=code, has_bib=True, has_jersey=p.has_jersey))
    else:
        p.race_pack.qr_code = code


def confirm_registration(
    db: Database,
    participant_id: str,
    ranges: BibRangeConfig,
    *,
    max_attempts: int = 5,
    backoff_seconds: float = 0.05,
) -> models.Participant:
    """Confirm a pending registration: assign a bib and create the race pack."""
    with db.session() as session:
        p = get_participant(session, participant_id)
        if p.registration_status == models.STATUS_CONFIRMED:
            raise ValueError("Participant already confirmed")
        if p.registration_status == models.STATUS_CANCELLED:
            raise ValueError("Cancelled registrations cannot be confirmed")
        get_range(p.category, ranges)

    try:
        assign_bib(
            db, participant_id, ranges,
            max_attempts=max_attempts, backoff_seconds=backoff_seconds,
            on_assigned=_ensure_race_pack,
        )
    except RangeExhausted as exc:
        logger.error("Confirmation of participant %s failed: %s", participant_id, exc)
        raise

    with db.session() as session:
        p = get_participant(session, participant_id)
        if p.registration_status != models.STATUS_CONFIRMED:
            # already held a valid bib, so the assignment hook never ran
            _ensure_race_pack(session, p, p.bib_number)
            session.commit()
        session.refresh(p)
        session.expunge(p)
        return p


def list_bib_changes(session: Session) -> list[models.BibChange]:
    return session.execute(
        select(models.BibChange).order_by(models.BibChange.created_at.asc(), models.BibChange.id.asc())
    ).scalars().all()


# ---------------------------
# Check-in / race pack collection
# ---------------------------

CHECKIN_COLLECTED = "COLLECTED"
CHECKIN_PENDING = "PENDING"


def list_checkin(
    session: Session, status: Optional[str] = None, category: Optional[str] = None
) -> list[tuple[models.Participant, Optional[models.RacePack]]]:
    """Confirmed participants with their race pack, optionally filtered by collection status."""
    q = (
        select(models.Participant, models.RacePack)
        .outerjoin(models.RacePack, models.RacePack.participant_id == models.Participant.id)
        .where(models.Participant.registration_status == models.STATUS_CONFIRMED)
        .order_by(models.Participant.created_at.asc(), models.Participant.id.asc())
    )
    if category:
        q = q.where(models.Participant.category == category)
    if status == CHECKIN_COLLECTED:
        q = q.where(models.RacePack.collected_at.is_not(None))
    elif status == CHECKIN_PENDING:
        # no pack yet counts as not collected
        q = q.where(models.RacePack.collected_at.is_(None))
    elif status:
        raise ValueError("status must be COLLECTED or PENDING")
    return [(p, pack) for p, pack in session.execute(q).all()]


def collect_race_pack(session: Session, qr_code: str) -> models.RacePack:
    """Hand out the race pack scanned at check-in."""
    pack = session.execute(
        select(models.RacePack).where(models.RacePack.qr_code == qr_code.strip())
    ).scalar_one_or_none()
    if pack is None:
        raise NotFound("Race pack not found")
    if pack.participant.registration_status != models.STATUS_CONFIRMED:
        raise ValueError("Registration is not confirmed")
    if pack.collected_at is not None:
        raise ValueError(f"Race pack already collected at {pack.collected_at.isoformat(timespec='seconds')}")
    pack.collected_at = models.utcnow()
    session.commit()
    logger.info("Race pack %s collected by participant %s", pack.qr_code, pack.participant_id)
    return pack
