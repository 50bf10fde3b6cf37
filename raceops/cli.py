"""Command line entry points.

Usage examples:
  raceops init-db
  raceops repair-bibs --dry-run
  raceops repair-bibs --rate 5
  raceops qr --category SHORT --out qr_out
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from .bibs import get_range, is_valid
from .db import Database
from .racepack import qr_png
from .repair import RateLimiter, run_repair
from .services import fetch_assigned_values
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _cmd_init_db(args, settings: Settings, db: Database) -> int:
    db.create_all()
    logger.info("Created tables in %s", settings.RACEOPS_DB_URL)
    return 0


def _cmd_repair_bibs(args, settings: Settings, db: Database) -> int:
    rate = args.rate if args.rate is not None else settings.RACEOPS_REPAIR_WRITES_PER_SECOND
    limiter = RateLimiter(rate) if rate > 0 else None
    report = run_repair(db, settings.bib_ranges(), dry_run=args.dry_run, limiter=limiter)
    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


def _cmd_qr(args, settings: Settings, db: Database) -> int:
    ranges = settings.bib_ranges()
    get_range(args.category, ranges)
    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)
    with db.session() as session:
        values = fetch_assigned_values(session, args.category)
    bibs = sorted((v for v in values if is_valid(v, args.category, ranges)), key=int)
    for bib in bibs:
        (out / f"bib_{bib}.png").write_bytes(qr_png(bib))
    logger.info("Saved %d QR PNGs to %s", len(bibs), out.resolve())
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="raceops")
    ap.add_argument("--db-url", type=str, default=None, help="Override RACEOPS_DB_URL")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create database tables")
    p.set_defaults(func=_cmd_init_db)

    p = sub.add_parser("repair-bibs", help="Reassign malformed or out-of-range bib numbers")
    p.add_argument("--dry-run", action="store_true", help="Report the plan without writing")
    p.add_argument("--rate", type=float, default=None, help="Max writes per second (0 = unlimited)")
    p.set_defaults(func=_cmd_repair_bibs)

    p = sub.add_parser("qr", help="Write a QR PNG for every assigned bib of a category")
    p.add_argument("--category", type=str, required=True)
    p.add_argument("--out", type=str, default="qr_out", help="Output directory")
    p.set_defaults(func=_cmd_qr)
    return ap


def main(argv: Optional[Sequence[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.RACEOPS_LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    db = Database(args.db_url or settings.RACEOPS_DB_URL)
    try:
        return args.func(args, settings, db)
    finally:
        db.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
