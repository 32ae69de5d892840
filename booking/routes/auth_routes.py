import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from booking.auth import jwt_handler
from booking.auth.dependencies import get_current_user, require_admin
from booking.calendar import google_client
from booking.core import config
from booking.core.errors import ExternalServiceError
from booking.database import get_db
from booking.models.user import User

router = APIRouter()

logger = logging.getLogger(__name__)

OAUTH_STATE_PURPOSE = "google_calendar_connect"
OAUTH_STATE_MINUTES = 10


def settings_redirect(outcome: str) -> RedirectResponse:
    return RedirectResponse(url=f"{config.CLIENT_URL}/settings?{urlencode({'google': outcome})}")


@router.get("/me")
def me(current_user: User = Depends(get_current_user)):
    return {
        "id": current_user.id,
        "email": current_user.email,
        "name": current_user.name,
        "role": current_user.role,
        "googleCalendarConnected": bool(current_user.google_refresh_token),
    }


@router.get("/google/authorize")
def google_authorize(admin: User = Depends(require_admin)):
    if not config.google_calendar_configured():
        raise HTTPException(status_code=503, detail="Google Calendar integration is not configured")

    state = jwt_handler.create_access_token(
        subject=admin.email,
        expires_minutes=OAUTH_STATE_MINUTES,
        purpose=OAUTH_STATE_PURPOSE,
    )
    return {"authorization_url": google_client.build_authorization_url(state)}


@router.get("/google/callback")
async def google_callback(
    code: str = Query(...),
    state: str = Query(...),
    db: Session = Depends(get_db),
):
    try:
        payload = jwt_handler.decode_access_token(state)
    except Exception:
        logger.warning("Rejected Google OAuth callback with an invalid state")
        return settings_redirect("error")

    if payload.get("purpose") != OAUTH_STATE_PURPOSE or not payload.get("sub"):
        return settings_redirect("error")

    try:
        tokens = await google_client.exchange_code(code)
    except ExternalServiceError:
        logger.exception("Google OAuth code exchange failed")
        return settings_redirect("error")

    refresh_token = tokens.get("refresh_token")
    if not refresh_token:
        logger.warning("Google OAuth callback returned no refresh token for %s", payload["sub"])
        return settings_redirect("error")

    user = db.query(User).filter(User.email == payload["sub"]).first()
    if user is None or not user.is_admin:
        return settings_redirect("error")
    user.google_refresh_token = refresh_token
    db.commit()

    logger.info("Google Calendar connected for %s", payload["sub"])
    return settings_redirect("success")
