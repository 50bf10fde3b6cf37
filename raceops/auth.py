from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, URLSafeSerializer
from starlette.responses import Response

from .settings import Settings

COOKIE_NAME = "raceops_auth"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _serializer(settings: Settings) -> URLSafeSerializer:
    return URLSafeSerializer(settings.RACEOPS_SECRET_KEY, salt="raceops-auth")


@dataclass
class CurrentUser:
    username: str
    role: str  # "admin"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def authenticate_admin(settings: Settings, username: str, password: str) -> Optional[CurrentUser]:
    ok_user = hmac.compare_digest(username.encode("utf-8"), settings.RACEOPS_ADMIN_USERNAME.encode("utf-8"))
    ok_pass = hmac.compare_digest(password.encode("utf-8"), settings.RACEOPS_ADMIN_PASSWORD.encode("utf-8"))
    if ok_user and ok_pass:
        return CurrentUser(username=username, role="admin")
    return None


def set_login_cookie(response: Response, settings: Settings, user: CurrentUser) -> None:
    token = _serializer(settings).dumps({"u": user.username, "r": user.role})
    response.set_cookie(
        COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        secure=False,  # set True behind HTTPS
        max_age=60 * 60 * 12,
    )


def clear_login_cookie(response: Response) -> None:
    response.delete_cookie(COOKIE_NAME)


def get_current_user(request: Request) -> Optional[CurrentUser]:
    raw = request.cookies.get(COOKIE_NAME)
    if not raw:
        return None
    try:
        data = _serializer(get_app_settings(request)).loads(raw)
    except BadSignature:
        return None
    return CurrentUser(username=str(data.get("u") or ""), role=str(data.get("r") or ""))


def admin_required(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if not user:
        raise HTTPException(status_code=401, detail="Login required")
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin required")
    return user

