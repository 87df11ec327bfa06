import logging
import re
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from .config import settings
from .database import check_db_connection, get_db
from .deps import get_current_user, get_processor
from .limiter import limiter
from .models import User, UserPreference, utcnow
from .security import SESSION_COOKIE_NAME
from .services.activity_processor import ActivityProcessor, ErrorKind, ProcessingResult

logger = logging.getLogger(__name__)

router = APIRouter()

ACTIVITY_ID_PATTERN = re.compile(r"\d+")

ERROR_STATUS = {
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.RATE_LIMITED: 429,
}


class ProcessActivityRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    force_update: bool = Field(False, alias="forceUpdate")


class UserUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    weather_enabled: bool = Field(alias="weatherEnabled")


class PreferencesUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    temperature_unit: Optional[Literal["celsius", "fahrenheit"]] = Field(None, alias="temperatureUnit")
    weather_format: Optional[Literal["detailed", "simple"]] = Field(None, alias="weatherFormat")
    include_uv_index: Optional[bool] = Field(None, alias="includeUvIndex")
    include_visibility: Optional[bool] = Field(None, alias="includeVisibility")
    custom_format: Optional[str] = Field(None, alias="customFormat", max_length=200)


def error_status(result: ProcessingResult) -> int:
    """HTTP status for a failed result: by error kind, then by message for anything unclassified."""
    if result.error_kind in ERROR_STATUS:
        return ERROR_STATUS[result.error_kind]

    message = (result.error or "").lower()
    if "not found" in message or "404" in message:
        return 404
    if "unauthorized" in message or "401" in message:
        return 401
    if "rate limit" in message or "429" in message:
        return 429
    return 400


def serialize_preferences(preference: Optional[UserPreference]):
    if preference is None:
        return None
    return {
        "temperatureUnit": preference.temperature_unit,
        "weatherFormat": preference.weather_format,
        "includeUvIndex": preference.include_uv_index,
        "includeVisibility": preference.include_visibility,
        "customFormat": preference.custom_format,
        "updatedAt": preference.updated_at.isoformat(),
    }


@router.get("/health")
def health():
    healthy = check_db_connection()
    body = {"status": "ok" if healthy else "degraded", "database": healthy, "environment": settings.ENVIRONMENT}
    return JSONResponse(status_code=200 if healthy else 503, content=body)


@router.post("/activities/process/{activity_id}")
@limiter.limit(settings.PROCESS_RATE_LIMIT)
async def process_activity(
    request: Request,
    activity_id: str,
    body: Optional[ProcessActivityRequest] = None,
    user: User = Depends(get_current_user),
    processor: ActivityProcessor = Depends(get_processor),
):
    if not ACTIVITY_ID_PATTERN.fullmatch(activity_id):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": {"message": "Invalid activity ID", "code": 400}},
        )

    force_update = body.force_update if body else False
    logger.info(f"Manual processing request for activity {activity_id} by user {user.id}")

    result = await processor.process_activity(activity_id, user.id, force_update=force_update)

    if result.success:
        return {
            "success": True,
            "message": "Activity was skipped" if result.skipped else "Activity processed successfully",
            "data": {
                "activityId": result.activity_id,
                "weatherData": result.weather_data.model_dump() if result.weather_data else None,
                "skipped": result.skipped,
                "reason": result.reason,
            },
        }

    status_code = error_status(result)
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "message": result.error or result.reason or "Failed to process activity",
                "code": status_code,
            },
            "data": {"activityId": result.activity_id, "skipped": result.skipped, "reason": result.reason},
        },
    )


@router.get("/users/me")
def get_me(user: User = Depends(get_current_user)):
    location = ", ".join(p for p in (user.city, user.state, user.country) if p) or None
    return {
        "success": True,
        "data": {
            "id": user.id,
            "stravaAthleteId": user.strava_athlete_id,
            "firstName": user.first_name,
            "lastName": user.last_name,
            "displayName": user.display_name,
            "profileImageUrl": user.profile_image_url,
            "location": location,
            "weatherEnabled": user.weather_enabled,
            "preferences": serialize_preferences(user.preferences),
            "memberSince": user.created_at.isoformat(),
            "lastUpdated": user.updated_at.isoformat(),
        },
    }


@router.patch("/users/me")
def update_me(update: UserUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user.weather_enabled = update.weather_enabled
    db.commit()
    logger.info(f"User {user.id} set weather_enabled={update.weather_enabled}")
    return {
        "success": True,
        "data": {"id": user.id, "weatherEnabled": user.weather_enabled, "updatedAt": user.updated_at.isoformat()},
        "message": "User preferences updated successfully",
    }


@router.patch("/users/me/preferences")
def update_preferences(
    update: PreferencesUpdate, user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    changes = update.model_dump(exclude_none=True)
    preference = user.preferences
    if preference is None:
        preference = UserPreference(user_id=user.id)
        db.add(preference)
    for key, value in changes.items():
        setattr(preference, key, value)
    preference.updated_at = utcnow()
    db.commit()
    db.refresh(preference)

    logger.info(f"Updated weather preferences for user {user.id}: {sorted(changes)}")
    return {
        "success": True,
        "data": serialize_preferences(preference),
        "message": "Weather preferences updated successfully",
    }


@router.delete("/users/me")
def delete_me(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    user_id = user.id
    db.delete(user)
    db.commit()
    logger.info(f"Deleted user account {user_id}")

    response = JSONResponse(content={"success": True, "message": "User account deleted successfully"})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response
