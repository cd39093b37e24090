"""
Store Notification Endpoints
============================

Receives asynchronous purchase notifications from the app stores.

Google Play:
    Pub/Sub push subscription for Real-Time Developer Notifications. The
    endpoint always answers 204 once the request is accepted so Pub/Sub
    does not redeliver; processing failures are only logged. When
    ``PLAY_PUSH_AUDIENCE_TOKEN`` is set, the push URL must carry it as the
    ``token`` query parameter.

App Store:
    Server Notifications V2. Answers 200 for everything it could read,
    including bad signatures and unknown users, so Apple stops retrying.
"""

import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from entitlement_engine.config import settings
from entitlement_engine.dependencies import DBSession
from entitlement_engine.schemas.notifications import PubSubPushEnvelope
from entitlement_engine.services.notification_ingest import NotificationIngestService

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_push_token(token: Optional[str]) -> bool:
    expected = settings.PLAY_PUSH_AUDIENCE_TOKEN
    if not expected:
        return True
    return bool(token) and hmac.compare_digest(token, expected)


@router.post("/play-store", status_code=status.HTTP_204_NO_CONTENT)
async def play_store_notification(
    request: Request,
    db: DBSession,
    token: Optional[str] = Query(default=None),
) -> Response:
    """Handle a Pub/Sub push carrying a Play Real-Time Developer Notification."""
    if not _verify_push_token(token):
        logger.warning("Unauthorized Play notification push")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid push token",
        )

    try:
        envelope = PubSubPushEnvelope.model_validate_json(await request.body())
    except ValueError as e:
        # Redelivery would not fix a malformed envelope
        logger.warning("Invalid Pub/Sub push body: %s", e)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    service = NotificationIngestService(db)
    await service.handle_play_notification(envelope)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.api_route(
    "/app-store",
    methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    response_class=PlainTextResponse,
)
async def app_store_notification(request: Request, db: DBSession) -> PlainTextResponse:
    """Handle an App Store Server Notification V2 (``{"signedPayload": ...}``)."""
    if request.method != "POST":
        return PlainTextResponse(
            "Method Not Allowed",
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        )

    try:
        body = await request.body()
        payload = json.loads(body.decode("utf-8")) if body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid App Store notification body: %s", e)
        return PlainTextResponse("Invalid JSON", status_code=status.HTTP_400_BAD_REQUEST)

    signed_payload = payload.get("signedPayload") if isinstance(payload, dict) else None
    if not signed_payload or not isinstance(signed_payload, str):
        return PlainTextResponse(
            "Missing signedPayload",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    try:
        service = NotificationIngestService(db)
        await service.handle_app_store_notification(signed_payload)
    except Exception:
        logger.exception("App Store notification handler failed")
        return PlainTextResponse(
            "Error",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return PlainTextResponse("OK", status_code=status.HTTP_200_OK)
