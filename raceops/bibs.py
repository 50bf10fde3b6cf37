"""Race bib allocation.

Bib numbers are plain decimal strings drawn from a per-category inclusive
range. ``allocate`` only *chooses* a candidate from an observed snapshot of
valid values; uniqueness is enforced by the store's unique constraint and the
caller retries the whole read-allocate-write cycle on conflict (see
``services.assign_bib``). Nothing here keeps state between calls.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping


class BibError(ValueError):
    pass


class InvalidCategory(BibError):
    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Unknown category: {category!r}")


class RangeExhausted(BibError):
    def __init__(self, category: str, lower: int, upper: int):
        self.category = category
        self.lower = lower
        self.upper = upper
        super().__init__(
            f"No bib numbers left for category {category} (range {lower}-{upper} is fully assigned)"
        )


@dataclass(frozen=True)
class BibRange:
    category: str
    lower: int
    upper: int

    def __post_init__(self) -> None:
        if self.lower <= 0 or self.upper <= 0:
            raise ValueError(f"Bib range for {self.category} must be positive")
        if self.lower > self.upper:
            raise ValueError(f"Bib range for {self.category} has lower > upper")

    def __contains__(self, value: int) -> bool:
        return self.lower <= value <= self.upper

    @property
    def size(self) -> int:
        return self.upper - self.lower + 1


BibRangeConfig = Mapping[str, BibRange]


def build_ranges(raw: Mapping[str, Iterable[int]]) -> dict[str, BibRange]:
    """Build a range config from ``{"SHORT": (5001, 5999), ...}``.

    Ranges may not overlap, since bib numbers are unique across categories.
    """
    ranges: dict[str, BibRange] = {}
    for category, bounds in raw.items():
        lower, upper = (int(b) for b in bounds)
        ranges[category] = BibRange(category=category, lower=lower, upper=upper)
    ordered = sorted(ranges.values(), key=lambda r: r.lower)
    for a, b in zip(ordered, ordered[1:]):
        if b.lower <= a.upper:
            raise ValueError(f"Bib ranges for {a.category} and {b.category} overlap")
    return ranges


def get_range(category: str, ranges: BibRangeConfig) -> BibRange:
    try:
        return ranges[category]
    except KeyError:
        raise InvalidCategory(category) from None


def format_bib(value: int) -> str:
    return str(int(value))


def parse_bib(value: str | None) -> int | None:
    """Strict parse: ASCII digits only, no leading zero. ``None`` if malformed."""
    if not value or not value.isascii() or not value.isdigit():
        return None
    if len(value) > 1 and value[0] == "0":
        return None
    return int(value)


def is_valid(value: str | None, category: str, ranges: BibRangeConfig) -> bool:
    bib_range = ranges.get(category)
    if bib_range is None:
        return False
    number = parse_bib(value)
    return number is not None and number in bib_range


def valid_values(values: Iterable[str | None], category: str, ranges: BibRangeConfig) -> set[int]:
    """Snapshot of the numbers occupying ``category``'s range.

    Which runner holds a value does not matter here, only whether it parses
    into the range. Malformed or out-of-range values are dropped, never
    raised; the repair job picks them up later.
    """
    get_range(category, ranges)
    return {int(v) for v in values if is_valid(v, category, ranges)}


def allocate(category: str, existing: Iterable[int], ranges: BibRangeConfig) -> str:
    """Return the next bib for ``category`` given the valid values in use.

    Normally this is ``highest + 1``. Once the top of the range is taken the
    lowest free number is reclaimed instead.
    """
    bib_range = get_range(category, ranges)
    lo, hi = bib_range.lower, bib_range.upper
    taken = sorted({v for v in existing if lo <= v <= hi})

    if not taken:
        return format_bib(lo)

    highest = taken[-1]
    if highest + 1 <= hi:
        return format_bib(highest + 1)

    # top of range reached: scan for gaps
    if taken[0] > lo:
        return format_bib(lo)
    for prev, cur in zip(taken, taken[1:]):
        if cur - prev > 1:
            return format_bib(prev + 1)
    if highest < hi:
        return format_bib(highest + 1)
    raise RangeExhausted(category, lo, hi)
