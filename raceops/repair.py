"""Offline repair of stored bib numbers.

Finds participants whose bib is malformed or outside their category's range
and gives each a fresh number from ``bibs.allocate``. Valid bibs are never
touched. Each participant is updated in its own transaction so a crash
leaves earlier repairs in place; a failed write is recorded and skipped.
"""
from __future__ import annotations

import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from . import models
from .bibs import BibRangeConfig, RangeExhausted, allocate, is_valid, valid_values
from .db import Database
from .racepack import racepack_code
from .services import conditionally_persist

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(r"\s*(-?\d+)")


@dataclass(frozen=True)
class StoredBib:
    participant_id: str
    category: str
    value: str
    created_at: datetime


@dataclass(frozen=True)
class RepairedBib:
    participant_id: str
    old_value: str
    new_value: str


@dataclass(frozen=True)
class FailedRepair:
    participant_id: str
    reason: str


@dataclass
class RepairReport:
    dry_run: bool = False
    repaired: list[RepairedBib] = field(default_factory=list)
    failed: list[FailedRepair] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "attempted": len(self.repaired) + len(self.failed),
            "succeeded": len(self.repaired),
            "failed": len(self.failed),
        }

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "repaired": [vars(r) for r in self.repaired],
            "failed": [vars(f) for f in self.failed],
            "summary": self.summary,
        }


class RateLimiter:
    """Fixed-interval scheduler: at most ``per_second`` calls to ``wait`` return per second."""

    def __init__(
        self,
        per_second: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if per_second <= 0:
            raise ValueError("per_second must be positive")
        self.interval = 1.0 / per_second
        self._clock = clock
        self._sleep = sleep
        self._next_at: Optional[float] = None

    def wait(self) -> None:
        now = self._clock()
        if self._next_at is not None and now < self._next_at:
            self._sleep(self._next_at - now)
            now = self._next_at
        self._next_at = now + self.interval


def _sort_key(entry: StoredBib):
    m = _LEADING_INT.match(entry.value)
    if m:
        return (0, int(m.group(1)), entry.created_at, entry.participant_id)
    return (1, 0, entry.created_at, entry.participant_id)


def load_stored_bibs(db: Database) -> list[StoredBib]:
    with db.session() as session:
        rows = session.execute(
            select(
                models.Participant.id,
                models.Participant.category,
                models.Participant.bib_number,
                models.Participant.created_at,
            )
            .where(models.Participant.bib_number.is_not(None))
            .order_by(models.Participant.created_at.asc(), models.Participant.id.asc())
        ).all()
    return [StoredBib(participant_id=r[0], category=r[1], value=r[2], created_at=r[3]) for r in rows]


def partition(entries: list[StoredBib], ranges: BibRangeConfig) -> dict[str, tuple[set[int], list[StoredBib]]]:
    """Split each category into (occupied numbers, invalid entries in repair order).

    The occupied set holds every stored number inside the category's range,
    whoever holds it. A number held by a runner of another category stays
    reserved for the whole pass, even if that runner is repaired too.
    """
    invalid_by_category: dict[str, list[StoredBib]] = defaultdict(list)
    for entry in entries:
        invalid = invalid_by_category[entry.category]
        if not is_valid(entry.value, entry.category, ranges):
            invalid.append(entry)

    all_values = [e.value for e in entries]
    out: dict[str, tuple[set[int], list[StoredBib]]] = {}
    for category, invalid in invalid_by_category.items():
        invalid.sort(key=_sort_key)
        occupied = valid_values(all_values, category, ranges) if category in ranges else set()
        out[category] = (occupied, invalid)
    return out


def _persist_repair(db: Database, entry: StoredBib, new_value: str) -> Optional[str]:
    """Apply one repair. Returns a failure reason, or None on success."""
    with db.session() as session:
        p = session.get(models.Participant, entry.participant_id)
        if p is None:
            return "Participant no longer exists"
        if p.bib_number != entry.value:
            return f"Bib changed concurrently (now {p.bib_number!r})"
        if not conditionally_persist(session, p, new_value):
            return f"Bib {new_value} is already in use"
        if p.race_pack is not None:
            p.race_pack.qr_code = racepack_code(new_value, p.id)
        session.add(models.BibChange(
            participant_id=p.id, old_value=entry.value, new_value=new_value, reason="repair",
        ))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            return f"Bib {new_value} is already in use"
    return None


def run_repair(
    db: Database,
    ranges: BibRangeConfig,
    *,
    dry_run: bool = False,
    limiter: Optional[RateLimiter] = None,
) -> RepairReport:
    report = RepairReport(dry_run=dry_run)
    groups = partition(load_stored_bibs(db), ranges)

    for category in sorted(groups):
        occupied, invalid = groups[category]
        if not invalid:
            continue
        if category not in ranges:
            logger.error("Category %r is not configured, skipping %d bibs", category, len(invalid))
            report.failed.extend(FailedRepair(e.participant_id, "InvalidCategory") for e in invalid)
            continue

        logger.info("Repairing %d invalid %s bibs", len(invalid), category)
        for i, entry in enumerate(invalid):
            try:
                new_value = allocate(category, occupied, ranges)
            except RangeExhausted:
                remaining = invalid[i:]
                logger.error("%s range exhausted, %d bibs left unrepaired", category, len(remaining))
                report.failed.extend(FailedRepair(e.participant_id, "RangeExhausted") for e in remaining)
                break
            occupied.add(int(new_value))

            if not dry_run:
                if limiter is not None:
                    limiter.wait()
                reason = _persist_repair(db, entry, new_value)
                if reason is not None:
                    logger.warning("Repair of %s (%s) failed: %s", entry.participant_id, entry.value, reason)
                    report.failed.append(FailedRepair(entry.participant_id, reason))
                    continue

            logger.info("%s: %s -> %s (%s)", category, entry.value, new_value, entry.participant_id)
            report.repaired.append(RepairedBib(entry.participant_id, entry.value, new_value))

    return report
