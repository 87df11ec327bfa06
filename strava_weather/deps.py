import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .models import User
from .security import SESSION_COOKIE_NAME, decode_access_token
from .services.activity_processor import ActivityProcessor
from .services.strava_client import StravaClient
from .services.subscription import SubscriptionManager
from .services.webhook_retry import RetryPolicy


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    # Verify signed JWT from cookie
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    user_id = payload.get("sub")
    if not user_id or not isinstance(user_id, str):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    if not settings.ADMIN_TOKEN:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Admin API not configured")
    if not x_admin_token or not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid admin token")


# Services are built once in the app lifespan and overridden in tests

def get_processor(request: Request) -> ActivityProcessor:
    return request.app.state.processor


def get_strava_client(request: Request) -> StravaClient:
    return request.app.state.strava_client


def get_subscription_manager(request: Request) -> SubscriptionManager:
    return request.app.state.subscription_manager


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(settings)
