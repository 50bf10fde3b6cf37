"""Shared pytest fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from raceops import models
from raceops.bibs import build_ranges
from raceops.db import Database
from raceops.main import create_app
from raceops.settings import Settings

T0 = datetime(2026, 3, 1, 8, 0, 0)


@pytest.fixture
def ranges():
    return build_ranges({"SHORT": (5001, 5999), "LONG": (10001, 10999)})


@pytest.fixture
def small_ranges():
    return build_ranges({"SHORT": (1, 3), "LONG": (10, 12)})


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def add_participant(db):
    """Insert a participant row directly, bypassing registration."""
    counter = {"n": 0}

    def add(category: str, bib: str | None = None, status: str = models.STATUS_CONFIRMED, **kw) -> str:
        counter["n"] += 1
        with db.session() as session:
            p = models.Participant(
                full_name=kw.pop("full_name", f"Runner {counter['n']}"),
                category=category,
                bib_number=bib,
                registration_status=status,
                created_at=kw.pop("created_at", T0 + timedelta(minutes=counter["n"])),
                **kw,
            )
            session.add(p)
            session.commit()
            return p.id

    return add


@pytest.fixture
def settings():
    return Settings(
        RACEOPS_ADMIN_USERNAME="admin",
        RACEOPS_ADMIN_PASSWORD="s3cret",
        RACEOPS_SECRET_KEY="test-key",
        RACEOPS_DB_URL="sqlite://",
        RACEOPS_BIB_BACKOFF_SECONDS=0.0,
    )


@pytest.fixture
def client(settings, db):
    app = create_app(settings=settings, database=db)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post("/login", data={"username": "admin", "password": "s3cret"})
    assert r.status_code == 200
    return client
