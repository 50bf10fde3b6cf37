from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.responses import Response

from . import services
from .auth import (
    admin_required,
    authenticate_admin,
    clear_login_cookie,
    get_app_settings,
    set_login_cookie,
)
from .bibs import InvalidCategory, RangeExhausted, get_range, is_valid
from .db import Database, get_database, get_session
from .racepack import qr_png
from .repair import RateLimiter, run_repair
from .schemas import (
    BibCheck,
    BibPreview,
    CheckinRow,
    ParticipantCreate,
    ParticipantOut,
    RacePackCollect,
    RepairReportOut,
)
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Race Ops")
    app.state.settings = settings
    app.state.bib_ranges = settings.bib_ranges()
    app.state.db = database

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.db is None:
            app.state.db = Database(settings.RACEOPS_DB_URL)
        app.state.db.create_all()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if app.state.db is not None:
            app.state.db.dispose()

    @app.exception_handler(InvalidCategory)
    def _invalid_category(request: Request, exc: InvalidCategory):
        return JSONResponse({"detail": str(exc)}, status_code=422)

    @app.exception_handler(RangeExhausted)
    def _range_exhausted(request: Request, exc: RangeExhausted):
        return JSONResponse({"detail": str(exc), "category": exc.category}, status_code=409)

    @app.exception_handler(services.BibAssignmentConflict)
    def _assignment_conflict(request: Request, exc: services.BibAssignmentConflict):
        return JSONResponse({"detail": str(exc)}, status_code=503, headers={"Retry-After": "1"})

    @app.exception_handler(services.NotFound)
    def _not_found(request: Request, exc: services.NotFound):
        return JSONResponse({"detail": str(exc)}, status_code=404)

    @app.exception_handler(ValueError)
    def _bad_request(request: Request, exc: ValueError):
        return JSONResponse({"detail": str(exc)}, status_code=400)

    app.include_router(router)

    from .csv_export import router as csv_router
    app.include_router(csv_router, prefix="/api", tags=["csv"])
    return app


def get_bib_ranges(request: Request):
    return request.app.state.bib_ranges


# ---------------------------
# Routes
# ---------------------------

@router.post("/login")
def login(
    username: str = Form(...),
    password: str = Form(...),
    settings: Settings = Depends(get_app_settings),
):
    user = authenticate_admin(settings, username.strip(), password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid username or password.")
    response = JSONResponse({"ok": True, "username": user.username})
    set_login_cookie(response, settings, user)
    return response


@router.post("/logout")
def logout():
    response = JSONResponse({"ok": True})
    clear_login_cookie(response)
    return response


@router.post("/api/participants", response_model=ParticipantOut, status_code=201)
def register_participant(
    payload: ParticipantCreate,
    session: Session = Depends(get_session),
    ranges=Depends(get_bib_ranges),
):
    return services.create_participant(session, payload, ranges)


@router.get("/api/participants", response_model=list[ParticipantOut])
def list_participants(category: str | None = None, session: Session = Depends(get_session)):
    return services.list_participants(session, category)


@router.get("/api/participants/{participant_id}", response_model=ParticipantOut)
def get_participant(participant_id: str, session: Session = Depends(get_session)):
    return services.get_participant(session, participant_id)


@router.post(
    "/api/participants/{participant_id}/confirm",
    response_model=ParticipantOut,
    dependencies=[Depends(admin_required)],
)
def confirm_participant(
    participant_id: str,
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
    ranges=Depends(get_bib_ranges),
):
    return services.confirm_registration(
        db,
        participant_id,
        ranges,
        max_attempts=settings.RACEOPS_BIB_MAX_ATTEMPTS,
        backoff_seconds=settings.RACEOPS_BIB_BACKOFF_SECONDS,
    )


@router.post("/api/participants/{participant_id}/cancel", dependencies=[Depends(admin_required)])
def cancel_participant(participant_id: str, session: Session = Depends(get_session)):
    services.cancel_participant(session, participant_id)
    return {"ok": True}


@router.get("/api/participants/{participant_id}/racepack/qr.png")
def racepack_qr(participant_id: str, session: Session = Depends(get_session)):
    p = services.get_participant(session, participant_id)
    if p.race_pack is None:
        raise HTTPException(status_code=404, detail="No race pack yet")
    return Response(content=qr_png(p.race_pack.qr_code), media_type="image/png")


def _checkin_row(p, pack) -> CheckinRow:
    return CheckinRow(
        participant_id=p.id,
        full_name=p.full_name,
        category=p.category,
        bib_number=p.bib_number,
        qr_code=pack.qr_code if pack else None,
        has_bib=pack.has_bib if pack else False,
        has_jersey=pack.has_jersey if pack else p.has_jersey,
        collected=bool(pack and pack.collected_at),
        collected_at=pack.collected_at if pack else None,
    )


@router.get("/api/admin/checkin", response_model=list[CheckinRow], dependencies=[Depends(admin_required)])
def checkin_list(
    status: str | None = None,
    category: str | None = None,
    session: Session = Depends(get_session),
):
    return [_checkin_row(p, pack) for p, pack in services.list_checkin(session, status, category)]


@router.post("/api/admin/checkin", response_model=CheckinRow, dependencies=[Depends(admin_required)])
def checkin_collect(payload: RacePackCollect, session: Session = Depends(get_session)):
    pack = services.collect_race_pack(session, payload.qr_code)
    return _checkin_row(pack.participant, pack)


@router.get("/api/bibs/{category}/validate", response_model=BibCheck)
def validate_bib(category: str, value: str = Query(...), ranges=Depends(get_bib_ranges)):
    get_range(category, ranges)
    return BibCheck(category=category, value=value, valid=is_valid(value, category, ranges))


@router.get("/api/bibs/{category}/next", response_model=BibPreview)
def next_bib(category: str, session: Session = Depends(get_session), ranges=Depends(get_bib_ranges)):
    return BibPreview(category=category, bib_number=services.preview_next_bib(session, category, ranges))


@router.post("/api/admin/bibs/repair", response_model=RepairReportOut, dependencies=[Depends(admin_required)])
def repair_bibs(
    dry_run: bool = False,
    db: Database = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
    ranges=Depends(get_bib_ranges),
):
    limiter = None
    if settings.RACEOPS_REPAIR_WRITES_PER_SECOND > 0:
        limiter = RateLimiter(settings.RACEOPS_REPAIR_WRITES_PER_SECOND)
    report = run_repair(db, ranges, dry_run=dry_run, limiter=limiter)
    logger.info("Bib repair finished: %s", report.summary)
    return report.to_dict()


app = create_app()
