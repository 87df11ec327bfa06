import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .deps import get_current_user, get_strava_client, get_subscription_manager
from .models import User, utcnow
from .security import SESSION_COOKIE_NAME, create_access_token
from .services.strava_client import StravaAPIError, StravaClient
from .services.subscription import SubscriptionManager

logger = logging.getLogger(__name__)

router = APIRouter()

STRAVA_SCOPES = "read,activity:read_all,activity:write"


@router.post("/strava/start")
def start_strava_auth():
    """
    Returns the Strava OAuth URL.
    Frontend should redirect the user to this URL.
    """
    if not settings.STRAVA_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Server misconfiguration: Missing STRAVA_CLIENT_ID")

    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.REDIRECT_URI,
        "approval_prompt": "auto",
        "scope": STRAVA_SCOPES,
    }
    return {"url": f"{settings.STRAVA_OAUTH_BASE_URL.rstrip('/')}/authorize?{urlencode(params)}"}


@router.get("/strava/callback")
async def strava_callback(
    background_tasks: BackgroundTasks,
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    strava: StravaClient = Depends(get_strava_client),
    subscriptions: SubscriptionManager = Depends(get_subscription_manager),
):
    """
    Handle Strava OAuth callback.
    Exchange code for tokens, create/update user, and redirect to frontend.
    """
    if error or not code:
        logger.warning(f"Strava authorization was not granted: {error or 'missing code'}")
        return RedirectResponse(url=f"{settings.FRONTEND_URL}/?error={error or 'missing_code'}")

    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Server misconfiguration")

    try:
        token_data = await strava.exchange_code(code)
    except StravaAPIError as e:
        raise HTTPException(status_code=400, detail=f"Failed to exchange token: {e}")

    athlete = token_data.get("athlete") or {}
    if not athlete.get("id"):
        raise HTTPException(status_code=400, detail="Invalid response from Strava")

    athlete_id = str(athlete["id"])
    expires_at = datetime.fromtimestamp(int(token_data["expires_at"]), timezone.utc).replace(tzinfo=None)

    user = db.query(User).filter(User.strava_athlete_id == athlete_id).first()
    is_new = user is None
    if is_new:
        user = User(strava_athlete_id=athlete_id)
        db.add(user)

    user.access_token = token_data["access_token"]
    user.refresh_token = token_data["refresh_token"]
    user.token_expires_at = expires_at
    user.first_name = athlete.get("firstname")
    user.last_name = athlete.get("lastname")
    user.profile_image_url = athlete.get("profile")
    user.city = athlete.get("city")
    user.state = athlete.get("state")
    user.country = athlete.get("country")
    user.updated_at = utcnow()
    db.commit()
    db.refresh(user)

    logger.info(f"{'Created' if is_new else 'Updated'} user {user.id} for athlete {athlete_id}")

    # Create a secure session token (JWT)
    session_token = create_access_token(data={"sub": user.id})

    # Redirect to Frontend and set the secure cookie
    response = RedirectResponse(url=f"{settings.FRONTEND_URL}/?connected=true")
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_token,
        httponly=True,
        secure=not settings.FRONTEND_URL.startswith("http://"),  # False for http://localhost
        samesite="Lax",  # Lax is suitable for OAuth redirects
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )

    if settings.should_setup_webhook_on_startup:
        background_tasks.add_task(subscriptions.ensure_subscription)

    return response


@router.delete("/revoke")
async def revoke_access(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    strava: StravaClient = Depends(get_strava_client),
):
    """Deauthorize at Strava (best effort) and delete the local account."""
    await strava.revoke_token(user.access_token)

    user_id = user.id
    db.delete(user)
    db.commit()
    logger.info(f"Revoked Strava access and deleted user {user_id}")

    response = JSONResponse(content={"success": True, "message": "Strava access revoked"})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@router.post("/logout")
def logout():
    response = JSONResponse(content={"success": True})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response
