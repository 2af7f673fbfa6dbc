"""Object download and storage event endpoints.

Objects are only served to callers presenting the access token stored with
them, the same ``?alt=media&token=`` convention the stored URLs use.
"""
import asyncio
import hmac
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Header, Query
from starlette.responses import Response

from staffverify.config import settings
from staffverify.core.exceptions import AuthError, PermissionDeniedError, ValidationError
from staffverify.schemas.verification import StorageEventPayload
from staffverify.services.storage_event_processor import get_processor
from staffverify.services.storage_service import get_storage
from staffverify.storage.base import ObjectFinalizedEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["storage"])


@router.get("/objects/{path:path}")
async def download_object(
    path: str,
    token: str = Query(..., min_length=1),
    alt: str = Query("media"),
):
    if alt != "media":
        raise ValidationError("Only alt=media downloads are supported")
    store = get_storage()
    stored = await asyncio.to_thread(store.stat, path)
    if stored is None or not stored.access_token:
        # Same response as a bad token so object existence is not revealed.
        raise PermissionDeniedError("Invalid object access token")
    if not hmac.compare_digest(stored.access_token.encode(), token.encode()):
        logger.warning("Rejected object download with bad token: %s", path)
        raise PermissionDeniedError("Invalid object access token")

    data = await asyncio.to_thread(store.get, path)
    if data is None:
        raise PermissionDeniedError("Invalid object access token")
    return Response(
        content=data,
        media_type=stored.content_type,
        headers={"Cache-Control": "private, max-age=3600"},
    )


@router.post("/storage/events")
async def receive_storage_event(
    payload: StorageEventPayload,
    x_storage_event_secret: str = Header(None),
):
    """Finalize notification from an external object store."""
    if not x_storage_event_secret or not hmac.compare_digest(
        x_storage_event_secret.encode(), settings.storage_event_secret.encode(),
    ):
        logger.warning("Storage event rejected: missing or invalid secret")
        raise AuthError("Invalid storage event secret")

    event = ObjectFinalizedEvent(
        name=payload.name,
        content_type=payload.contentType,
        size=payload.size,
        time_created=payload.timeCreated or datetime.now(timezone.utc),
        bucket=payload.bucket,
    )
    processor = get_processor()
    if not event.name.startswith(processor.verification_prefix):
        return {"accepted": False, "reason": "ignored_prefix", "matchedRequestId": None}

    request_id = await processor.handle(event)
    return {"accepted": True, "matchedRequestId": request_id}
