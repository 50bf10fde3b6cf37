from __future__ import annotations

import json

import pytest

from raceops import models
from raceops.cli import main
from raceops.db import Database


@pytest.fixture
def file_db(tmp_path):
    url = f"sqlite:///{tmp_path / 'raceops.db'}"
    database = Database(url)
    database.create_all()
    yield url, database
    database.dispose()


def _add(database, category, bib):
    with database.session() as session:
        p = models.Participant(full_name="Runner", category=category, bib_number=bib,
                               registration_status=models.STATUS_CONFIRMED)
        session.add(p)
        session.commit()
        return p.id


def test_init_db(tmp_path, settings):
    url = f"sqlite:///{tmp_path / 'fresh.db'}"
    assert main(["--db-url", url, "init-db"], settings=settings) == 0
    assert (tmp_path / "fresh.db").exists()


def test_repair_bibs_dry_run_then_apply(file_db, settings, capsys):
    url, database = file_db
    pid = _add(database, "LONG", "10-001")

    assert main(["--db-url", url, "repair-bibs", "--dry-run"], settings=settings) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["dry_run"] is True
    assert report["repaired"] == [{"participant_id": pid, "old_value": "10-001", "new_value": "10001"}]

    assert main(["--db-url", url, "repair-bibs", "--rate", "0"], settings=settings) == 0
    json.loads(capsys.readouterr().out)
    with database.session() as session:
        assert session.get(models.Participant, pid).bib_number == "10001"


def test_repair_bibs_exit_code_on_failure(file_db, settings, capsys):
    url, database = file_db
    _add(database, "ULTRA", "1")
    assert main(["--db-url", url, "repair-bibs"], settings=settings) == 1
    report = json.loads(capsys.readouterr().out)
    assert report["failed"][0]["reason"] == "InvalidCategory"


def test_qr_writes_png_per_valid_bib(file_db, settings, tmp_path):
    url, database = file_db
    for bib in ("5002", "5001", "oops"):
        _add(database, "SHORT", bib)
    out = tmp_path / "qr"
    assert main(["--db-url", url, "qr", "--category", "SHORT", "--out", str(out)], settings=settings) == 0
    assert sorted(p.name for p in out.iterdir()) == ["bib_5001.png", "bib_5002.png"]
    assert (out / "bib_5001.png").read_bytes().startswith(b"\x89PNG")
