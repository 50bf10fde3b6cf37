"""HTTP surface for registration, confirmation and bib repair."""

from __future__ import annotations

from fastapi.testclient import TestClient

from raceops import services
from raceops.main import create_app
from raceops.settings import Settings


def _register(client, category="SHORT", name="Ana Runner"):
    r = client.post("/api/participants", json={"full_name": name, "category": category})
    assert r.status_code == 201, r.text
    return r.json()


def test_register_participant(client):
    data = _register(client)
    assert data["registration_status"] == "PENDING"
    assert data["bib_number"] is None

    listed = client.get("/api/participants", params={"category": "SHORT"}).json()
    assert [p["id"] for p in listed] == [data["id"]]


def test_register_unknown_category(client):
    r = client.post("/api/participants", json={"full_name": "Ana", "category": "ULTRA"})
    assert r.status_code == 422
    assert "ULTRA" in r.json()["detail"]


def test_login_rejects_bad_password(client):
    r = client.post("/login", data={"username": "admin", "password": "nope"})
    assert r.status_code == 401


def test_confirm_requires_login(client):
    pid = _register(client)["id"]
    r = client.post(f"/api/participants/{pid}/confirm")
    assert r.status_code == 401


def test_confirm_assigns_sequential_bibs(admin_client):
    first = _register(admin_client)["id"]
    second = _register(admin_client, name="Ben Runner")["id"]

    r1 = admin_client.post(f"/api/participants/{first}/confirm")
    r2 = admin_client.post(f"/api/participants/{second}/confirm")

    assert r1.status_code == 200
    assert (r1.json()["bib_number"], r2.json()["bib_number"]) == ("5001", "5002")
    assert r1.json()["registration_status"] == "CONFIRMED"


def test_confirm_twice_is_bad_request(admin_client):
    pid = _register(admin_client)["id"]
    admin_client.post(f"/api/participants/{pid}/confirm")
    r = admin_client.post(f"/api/participants/{pid}/confirm")
    assert r.status_code == 400
    assert "already confirmed" in r.json()["detail"]


def test_confirm_unknown_participant(admin_client):
    assert admin_client.post("/api/participants/nope/confirm").status_code == 404


def test_confirm_range_exhausted(settings, db):
    tight = settings.model_copy(update={"RACEOPS_BIB_RANGES": {"SHORT": (1, 1), "LONG": (10, 10)}})
    with TestClient(create_app(settings=tight, database=db)) as client:
        client.post("/login", data={"username": "admin", "password": "s3cret"})
        first = _register(client)["id"]
        second = _register(client, name="Ben")["id"]
        assert client.post(f"/api/participants/{first}/confirm").json()["bib_number"] == "1"

        r = client.post(f"/api/participants/{second}/confirm")
        assert r.status_code == 409
        assert r.json()["category"] == "SHORT"
        assert client.get(f"/api/participants/{second}").json()["bib_number"] is None


def test_confirm_persistent_conflict_is_transient_error(admin_client, monkeypatch):
    first = _register(admin_client)["id"]
    admin_client.post(f"/api/participants/{first}/confirm")
    second = _register(admin_client, name="Ben")["id"]

    monkeypatch.setattr(services, "fetch_occupied_values", lambda session, category, ranges: set())
    r = admin_client.post(f"/api/participants/{second}/confirm")
    assert r.status_code == 503
    assert r.headers["Retry-After"] == "1"


def test_validate_bib(client):
    assert client.get("/api/bibs/SHORT/validate", params={"value": "5001"}).json()["valid"] is True
    assert client.get("/api/bibs/SHORT/validate", params={"value": "6000"}).json()["valid"] is False
    assert client.get("/api/bibs/ULTRA/validate", params={"value": "1"}).status_code == 422


def test_next_bib_preview(admin_client):
    assert admin_client.get("/api/bibs/LONG/next").json() == {"category": "LONG", "bib_number": "10001"}
    pid = _register(admin_client, category="LONG")["id"]
    admin_client.post(f"/api/participants/{pid}/confirm")
    assert admin_client.get("/api/bibs/LONG/next").json()["bib_number"] == "10002"


def test_repair_endpoint(admin_client, add_participant):
    bad = add_participant("SHORT", bib="SHORT-1")

    dry = admin_client.post("/api/admin/bibs/repair", params={"dry_run": True}).json()
    assert dry["dry_run"] is True
    assert admin_client.get(f"/api/participants/{bad}").json()["bib_number"] == "SHORT-1"

    r = admin_client.post("/api/admin/bibs/repair")
    assert r.status_code == 200
    body = r.json()
    assert body["repaired"] == [{"participant_id": bad, "old_value": "SHORT-1", "new_value": "5001"}]
    assert body["summary"] == {"attempted": 1, "succeeded": 1, "failed": 0}
    assert admin_client.get(f"/api/participants/{bad}").json()["bib_number"] == "5001"


def test_repair_requires_admin(client):
    assert client.post("/api/admin/bibs/repair").status_code == 401


def test_racepack_qr_png(admin_client):
    pid = _register(admin_client)["id"]
    assert admin_client.get(f"/api/participants/{pid}/racepack/qr.png").status_code == 404

    admin_client.post(f"/api/participants/{pid}/confirm")
    r = admin_client.get(f"/api/participants/{pid}/racepack/qr.png")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")


def test_csv_exports(admin_client):
    pid = _register(admin_client)["id"]
    admin_client.post(f"/api/participants/{pid}/confirm")

    participants = admin_client.get("/api/participants.csv")
    assert participants.status_code == 200
    lines = participants.text.strip().splitlines()
    assert lines[0].startswith("id,full_name,email,category,bib_number")
    assert f"{pid},Ana Runner,,SHORT,5001,CONFIRMED" in lines[1]

    changes = admin_client.get("/api/bib-changes.csv").text.strip().splitlines()
    assert changes[1].startswith(f"{pid},,5001,assigned,")


def test_cancel_frees_bib(admin_client):
    pid = _register(admin_client)["id"]
    admin_client.post(f"/api/participants/{pid}/confirm")
    assert admin_client.post(f"/api/participants/{pid}/cancel").json() == {"ok": True}
    data = admin_client.get(f"/api/participants/{pid}").json()
    assert (data["registration_status"], data["bib_number"]) == ("CANCELLED", None)


def test_logout_clears_cookie(admin_client):
    admin_client.post("/logout")
    pid = _register(admin_client)["id"]
    assert admin_client.post(f"/api/participants/{pid}/confirm").status_code == 401


def test_settings_parse_ranges_from_env(monkeypatch):
    monkeypatch.setenv("RACEOPS_BIB_RANGES", '{"KIDS": [1, 500]}')
    ranges = Settings().bib_ranges()
    assert list(ranges) == ["KIDS"]
    assert (ranges["KIDS"].lower, ranges["KIDS"].upper) == (1, 500)


def test_checkin_flow(admin_client):
    pid = _register(admin_client)["id"]
    admin_client.post(f"/api/participants/{pid}/confirm")

    pending = admin_client.get("/api/admin/checkin", params={"status": "PENDING"}).json()
    assert [(r["participant_id"], r["collected"]) for r in pending] == [(pid, False)]
    code = pending[0]["qr_code"]

    r = admin_client.post("/api/admin/checkin", json={"qr_code": code})
    assert r.status_code == 200
    assert r.json()["collected"] is True
    assert r.json()["collected_at"] is not None

    again = admin_client.post("/api/admin/checkin", json={"qr_code": code})
    assert again.status_code == 400
    assert admin_client.post("/api/admin/checkin", json={"qr_code": "RPNOPE"}).status_code == 404

    collected = admin_client.get("/api/admin/checkin", params={"status": "COLLECTED"}).json()
    assert [r["participant_id"] for r in collected] == [pid]
    assert admin_client.get("/api/admin/checkin", params={"status": "LOST"}).status_code == 400


def test_checkin_requires_admin(client):
    assert client.get("/api/admin/checkin").status_code == 401
