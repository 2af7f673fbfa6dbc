"""Claimant-side verification submission.

A claim is a photo, a brand code pair, or both. Everything is validated
before the first write. The record, the user's pending state and the
location score commit in one transaction after the photo upload; if that
commit fails the upload is deleted again so no orphan is left behind.
Uploads are create-only, so two claims that allocate the same path in the
same millisecond never overwrite each other.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from staffverify.config import Settings, settings as default_settings
from staffverify.core.auth import Principal
from staffverify.core.exceptions import TransientIOError, ValidationError
from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest
from staffverify.repositories.base import UserStateRepository, VerificationRequestRepository
from staffverify.services.scoring_service import apply_score
from staffverify.storage.base import ObjectStore, new_access_token

logger = logging.getLogger(__name__)

BRAND_SOURCES: tuple[dict, ...] = (
    {"id": "nature-made", "name": "Nature Made"},
    {"id": "garden-of-life", "name": "Garden of Life"},
    {"id": "new-chapter", "name": "New Chapter"},
    {"id": "nordic-naturals", "name": "Nordic Naturals"},
    {"id": "store-manager", "name": "Store Manager"},
)

DEFAULT_USER_NAME = "New User"
DEFAULT_STORE_NAME = "Unknown Store"
MAX_PATH_ATTEMPTS = 5


@dataclass(frozen=True)
class UploadedImage:
    data: bytes
    content_type: str
    filename: str = ""


@dataclass(frozen=True)
class DeviceLocation:
    lat: float
    lng: float
    obtained_at: Optional[datetime] = None


def list_brand_sources() -> list[dict]:
    return [dict(source) for source in BRAND_SOURCES]


def daily_code(
    now: Optional[datetime] = None,
    prefix: Optional[str] = None,
    tz_name: Optional[str] = None,
) -> str:
    """Today's audit code, ``{prefix}-DDMM`` in the configured timezone.

    Anyone can compute this; it records which day a claim was made and
    grants nothing.
    """
    prefix = prefix or default_settings.daily_code_prefix
    tz = ZoneInfo(tz_name or default_settings.daily_code_timezone)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)
    return f"{prefix}-{local.day:02d}{local.month:02d}"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def request_to_dict(req: VerificationRequest) -> dict:
    """Wire representation of a request (camelCase field names)."""
    data = {
        "id": req.id,
        "userId": req.user_id,
        "userEmail": req.user_email,
        "userName": req.user_name,
        "storeName": req.store_name,
        "photoURL": req.photo_url,
        "photoPath": req.photo_path,
        "photoRedactedUrl": req.photo_redacted_url,
        "metadata": json.loads(req.file_metadata or "{}"),
        "verificationCode": req.verification_code,
        "brandCode": req.brand_code or "",
        "selectedBrand": req.selected_brand or "",
        "hasGps": req.has_gps,
        "exifParsedAt": _iso(req.exif_parsed_at),
        "deviceLoc": None,
        "autoScore": req.auto_score,
        "reasons": json.loads(req.score_reasons or "[]"),
        "distanceM": req.distance_m,
        "locSource": req.loc_source,
        "status": req.status,
        "adminNotes": req.admin_notes or "",
        "reviewedBy": req.reviewed_by,
        "submittedAt": _iso(req.submitted_at),
        "reviewedAt": _iso(req.reviewed_at),
    }
    if req.gps_lat is not None and req.gps_lng is not None:
        data["gps"] = {"lat": req.gps_lat, "lng": req.gps_lng, "source": req.gps_source or "exif"}
    if req.device_lat is not None and req.device_lng is not None:
        data["deviceLoc"] = {
            "lat": req.device_lat,
            "lng": req.device_lng,
            "obtainedAt": _iso(req.device_loc_obtained_at),
        }
    return data


def user_state_to_dict(user: Optional[UserVerificationState], user_id: str = "") -> dict:
    if user is None:
        return {
            "userId": user_id,
            "verificationStatus": "not_submitted",
            "verified": False,
            "approvedAt": None,
            "rejectedAt": None,
            "lastVerificationSubmission": None,
            "storeLoc": None,
        }
    store_loc = None
    if user.store_lat is not None and user.store_lng is not None:
        store_loc = {"lat": user.store_lat, "lng": user.store_lng}
    return {
        "userId": user.id,
        "email": user.email,
        "displayName": user.display_name,
        "storeName": user.store_name,
        "verificationStatus": user.verification_status,
        "verified": bool(user.verified),
        "approvedAt": _iso(user.approved_at),
        "rejectedAt": _iso(user.rejected_at),
        "lastVerificationSubmission": _iso(user.last_verification_submission),
        "lastDecidedRequestId": user.last_decided_request_id,
        "storeLoc": store_loc,
    }


class SubmissionService:
    def __init__(
        self,
        requests: VerificationRequestRepository,
        users: UserStateRepository,
        store: ObjectStore,
        cfg: Settings = default_settings,
    ):
        self.requests = requests
        self.users = users
        self.store = store
        self.cfg = cfg

    def validate(
        self,
        image: Optional[UploadedImage],
        selected_brand: str,
        brand_code: str,
        device_location: Optional[DeviceLocation],
    ) -> None:
        """Raise ``ValidationError`` for any claim that must not be written."""
        if image is not None:
            if not (image.content_type or "").lower().startswith("image/"):
                raise ValidationError(f"Unsupported file type '{image.content_type}'; an image is required")
            if not image.data:
                raise ValidationError("Uploaded image is empty")
            if len(image.data) > self.cfg.max_upload_bytes:
                raise ValidationError(
                    f"Image is {len(image.data)} bytes; the limit is {self.cfg.max_upload_bytes} bytes"
                )

        if bool(selected_brand) != bool(brand_code):
            raise ValidationError("Code verification needs both selectedBrand and brandCode")
        if image is None and not selected_brand:
            raise ValidationError("Provide a photo or a brand verification code")

        if device_location is not None:
            if not (-90.0 <= device_location.lat <= 90.0 and -180.0 <= device_location.lng <= 180.0):
                raise ValidationError("Device location is out of range")

    def allocate_photo_path(self, user_id: str, now: datetime, after: Optional[str] = None) -> str:
        """``verification/{userId}/{ms}_verification.jpg``, bumping ms past existing objects.

        ``after`` is a path already known to be taken; allocation resumes one ms past it.
        """
        if not user_id or "/" in user_id:
            raise ValidationError("User id cannot be used as a storage path segment")
        ts = int(now.timestamp() * 1000)
        if after is not None:
            ts = max(ts, int(after.rsplit("/", 1)[-1].split("_", 1)[0]) + 1)
        while True:
            path = f"{self.cfg.verification_prefix}{user_id}/{ts}_verification.jpg"
            if not self.store.exists(path):
                return path
            ts += 1

    async def submit(
        self,
        principal: Principal,
        image: Optional[UploadedImage] = None,
        selected_brand: Optional[str] = None,
        brand_code: Optional[str] = None,
        device_location: Optional[DeviceLocation] = None,
        file_metadata: Optional[dict] = None,
    ) -> VerificationRequest:
        selected_brand = (selected_brand or "").strip()
        brand_code = (brand_code or "").strip()
        self.validate(image, selected_brand, brand_code, device_location)

        now = datetime.now(timezone.utc)
        user_id = principal.user_id
        photo_path = photo_url = None
        access_token = None
        file_metadata = dict(file_metadata or {})
        if image is not None:
            photo_path = await asyncio.to_thread(self.allocate_photo_path, user_id, now)
            access_token = new_access_token()
            photo_url = self.store.download_url(photo_path, access_token)
            file_metadata.update({
                "fileName": image.filename or f"capture-{int(now.timestamp() * 1000)}.jpg",
                "mimeType": image.content_type,
                "size": len(image.data),
            })

        request = VerificationRequest(
            user_id=user_id,
            user_email=principal.email,
            user_name=principal.name or DEFAULT_USER_NAME,
            store_name=principal.store_name or DEFAULT_STORE_NAME,
            photo_url=photo_url,
            photo_path=photo_path,
            file_metadata=json.dumps(file_metadata),
            verification_code=daily_code(now, self.cfg.daily_code_prefix, self.cfg.daily_code_timezone),
            brand_code=brand_code,
            selected_brand=selected_brand,
            device_lat=device_location.lat if device_location else None,
            device_lng=device_location.lng if device_location else None,
            device_loc_obtained_at=(
                (device_location.obtained_at or now) if device_location else None
            ),
            status="pending",
            submitted_at=now,
        )

        uploaded = False
        try:
            await self.users.get_or_create(
                user_id, principal.email, principal.name, principal.store_name,
            )
            await self.requests.add(request)
            user = await self.users.mark_pending(user_id, now)
            apply_score(request, user)

            if image is not None:
                photo_path = await self._upload(user_id, now, photo_path, image, access_token)
                request.photo_path = photo_path
                request.photo_url = self.store.download_url(photo_path, access_token)
                uploaded = True

            await self.requests.commit()
        except SQLAlchemyError as e:
            await self.requests.rollback()
            await self._compensate(photo_path, uploaded)
            logger.error("Verification record write failed for user %s: %s", user_id, e)
            raise TransientIOError("Could not save verification request, please retry") from e
        except OSError as e:
            await self.requests.rollback()
            await self._compensate(photo_path, uploaded)
            logger.error("Verification upload failed for user %s: %s", user_id, e)
            raise TransientIOError("Could not store verification photo, please retry") from e

        logger.info(
            "Verification submitted: request=%s user=%s photo=%s code=%s",
            request.id, user_id, photo_path or "-", bool(brand_code),
        )
        return request

    async def _upload(
        self, user_id: str, now: datetime, photo_path: str, image: UploadedImage, access_token: str
    ) -> str:
        """Create the photo object, moving to a later ms if the path was taken meanwhile."""
        for _ in range(MAX_PATH_ATTEMPTS - 1):
            try:
                await self.store.put_async(photo_path, image.data, image.content_type, access_token=access_token)
                return photo_path
            except FileExistsError:
                logger.info("Photo path %s was taken by a concurrent upload; reallocating", photo_path)
                photo_path = await asyncio.to_thread(self.allocate_photo_path, user_id, now, photo_path)
        await self.store.put_async(photo_path, image.data, image.content_type, access_token=access_token)
        return photo_path

    async def _compensate(self, photo_path: Optional[str], uploaded: bool) -> None:
        """Best-effort removal of an upload whose record never committed."""
        if not uploaded or not photo_path:
            return
        try:
            await asyncio.to_thread(self.store.delete, photo_path)
            logger.warning("Removed orphaned upload %s after failed record write", photo_path)
        except OSError:
            logger.exception("Could not remove orphaned upload %s; left for the orphan sweep", photo_path)
