"""
Strava webhook endpoints.

GET  /strava/webhook         subscription verification handshake
POST /strava/webhook         event intake, always answered with 200
GET  /strava/webhook/status  configuration check

Strava treats any non-2xx as a failed delivery and redelivers the event, so the
POST handler acknowledges everything, including its own failures.
"""
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .deps import get_processor, get_retry_policy
from .models import User
from .services.activity_processor import ActivityProcessor
from .services.webhook_retry import RetryPolicy, process_with_retry

logger = logging.getLogger(__name__)

router = APIRouter()


class WebhookEvent(BaseModel):
    object_type: Literal["activity", "athlete"]
    object_id: int
    aspect_type: Literal["create", "update", "delete"]
    owner_id: int
    subscription_id: int
    event_time: int
    updates: Optional[Dict[str, Any]] = None


@router.get("/webhook")
def verify_webhook(request: Request):
    mode = request.query_params.get("hub.mode")
    token = request.query_params.get("hub.verify_token")
    challenge = request.query_params.get("hub.challenge")

    token_valid = bool(settings.STRAVA_WEBHOOK_VERIFY_TOKEN) and secrets.compare_digest(
        (token or "").encode(), settings.STRAVA_WEBHOOK_VERIFY_TOKEN.encode()
    )
    if mode == "subscribe" and token_valid:
        logger.info("Webhook verification successful")
        return {"hub.challenge": challenge}

    logger.warning(
        f"Webhook verification failed (mode_valid={mode == 'subscribe'}, "
        f"token_valid={token_valid})"
    )
    return JSONResponse(status_code=403, content={"error": "Verification failed"})


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    db: Session = Depends(get_db),
    processor: ActivityProcessor = Depends(get_processor),
    policy: RetryPolicy = Depends(get_retry_policy),
):
    started = time.monotonic()

    try:
        event = WebhookEvent.model_validate(await request.json())
    except (ValidationError, ValueError) as e:
        logger.warning(f"Invalid webhook event received: {e}")
        return {"message": "Invalid event acknowledged"}

    try:
        return await _handle_event(event, db, processor, policy, started)
    except Exception as e:
        logger.exception(f"Webhook handling failed for {event.object_type} {event.object_id}: {e}")
        return {"message": "Event acknowledged"}


async def _handle_event(
    event: WebhookEvent, db: Session, processor: ActivityProcessor, policy: RetryPolicy, started: float
) -> Dict[str, Any]:
    event_time = datetime.fromtimestamp(event.event_time, timezone.utc).isoformat()
    logger.info(
        f"Webhook event: {event.object_type} {event.aspect_type} id={event.object_id} "
        f"owner={event.owner_id} at {event_time}"
    )

    if event.object_type != "activity" or event.aspect_type != "create":
        logger.debug(f"Ignoring {event.object_type} {event.aspect_type} event")
        return {"message": "Event acknowledged"}

    activity_id = str(event.object_id)
    user = db.query(User).filter(User.strava_athlete_id == str(event.owner_id)).first()
    if not user:
        logger.info(f"Activity webhook for unknown athlete {event.owner_id}")
        return {"message": "Event acknowledged"}
    if not user.weather_enabled:
        logger.info(f"Weather updates disabled for user {user.id}, ignoring activity {activity_id}")
        return {"message": "Event acknowledged"}
    user_id = user.id
    # Release the connection while the pipeline runs
    db.close()

    outcome = await process_with_retry(processor, activity_id, user_id, policy, started=started)

    summary = (
        f"activity={activity_id} user={user_id} attempts={outcome.attempts} "
        f"time={outcome.elapsed_ms}ms success={outcome.success} skipped={outcome.skipped}"
    )
    if outcome.skipped:
        logger.info(f"Activity processing skipped ({outcome.result.reason}): {summary}")
    elif outcome.success:
        logger.info(f"Activity processed successfully: {summary}")
    else:
        final_error = outcome.result.error if outcome.result else "processing budget exhausted"
        logger.warning(f"Activity processing failed: {summary} error={final_error} history={outcome.errors}")

    return {
        "message": "Webhook processed",
        "activityId": activity_id,
        "attempts": outcome.attempts,
        "processingTimeMs": outcome.elapsed_ms,
        "success": outcome.success,
        "skipped": outcome.skipped,
    }


@router.get("/webhook/status")
def webhook_status():
    configured = bool(settings.STRAVA_WEBHOOK_VERIFY_TOKEN)
    return {
        "success": True,
        "message": "Webhook endpoint is active",
        "data": {
            "configured": configured,
            "endpoint": settings.webhook_callback_url,
            "verifyTokenSet": configured,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }
