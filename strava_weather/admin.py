"""Operator endpoints around the webhook subscription, guarded by X-Admin-Token."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from .deps import get_subscription_manager, require_admin
from .services.subscription import SubscriptionError, SubscriptionManager

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/webhook/status")
async def subscription_status(manager: SubscriptionManager = Depends(get_subscription_manager)):
    try:
        subscription = await manager.view_subscription()
    except SubscriptionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "success": True,
        "data": {
            "hasSubscription": subscription is not None,
            "subscription": subscription,
            "callbackUrl": manager.determine_callback_url(),
        },
    }


@router.post("/webhook/subscribe")
async def subscribe(manager: SubscriptionManager = Depends(get_subscription_manager)):
    callback_url = manager.determine_callback_url()
    if not callback_url:
        raise HTTPException(status_code=400, detail="No public callback URL configured")

    if not await manager.verify_endpoint(callback_url):
        raise HTTPException(status_code=400, detail=f"Webhook endpoint {callback_url} failed verification")

    try:
        subscription = await manager.create_subscription(callback_url)
    except SubscriptionError as e:
        message = str(e)
        if "already exists" in message:
            raise HTTPException(status_code=409, detail=message)
        if "HTTPS" in message:
            raise HTTPException(status_code=400, detail=message)
        raise HTTPException(status_code=502, detail=message)

    logger.info(f"Admin created webhook subscription {subscription.get('id')}")
    return {"success": True, "data": subscription}


@router.delete("/webhook")
async def unsubscribe(manager: SubscriptionManager = Depends(get_subscription_manager)):
    try:
        subscription = await manager.view_subscription()
        if not subscription:
            raise HTTPException(status_code=404, detail="No webhook subscription found")
        await manager.delete_subscription(subscription["id"])
    except SubscriptionError as e:
        raise HTTPException(status_code=502, detail=str(e))

    logger.info(f"Admin deleted webhook subscription {subscription['id']}")
    return {"success": True, "message": f"Subscription {subscription['id']} deleted"}
