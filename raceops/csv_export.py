from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette.responses import Response

from . import services
from .auth import admin_required
from .db import get_session

router = APIRouter()


def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/participants.csv", dependencies=[Depends(admin_required)])
def participants_csv(category: str | None = None, session: Session = Depends(get_session)):
    rows = services.list_participants(session, category)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["id", "full_name", "email", "category", "bib_number", "registration_status", "created_at"])
    for p in rows:
        w.writerow([
            p.id, p.full_name, p.email, p.category, p.bib_number or "",
            p.registration_status, p.created_at.isoformat(),
        ])
    return _csv_response("participants.csv", buf.getvalue())


@router.get("/bib-changes.csv", dependencies=[Depends(admin_required)])
def bib_changes_csv(session: Session = Depends(get_session)):
    rows = services.list_bib_changes(session)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["participant_id", "old_value", "new_value", "reason", "created_at"])
    for c in rows:
        w.writerow([c.participant_id, c.old_value or "", c.new_value, c.reason, c.created_at.isoformat()])
    return _csv_response("bib-changes.csv", buf.getvalue())
