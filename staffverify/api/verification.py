"""Claimant verification endpoints."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.config import settings
from staffverify.core.auth import Principal, get_current_principal
from staffverify.core.exceptions import ValidationError
from staffverify.database import get_db
from staffverify.repositories.sql import SqlUserStateRepository, SqlVerificationRequestRepository
from staffverify.schemas.verification import StoreLocationUpdate
from staffverify.services.scoring_service import apply_score
from staffverify.services.storage_service import get_storage
from staffverify.services.submission_service import (
    DeviceLocation,
    SubmissionService,
    UploadedImage,
    daily_code,
    list_brand_sources,
    request_to_dict,
    user_state_to_dict,
)

router = APIRouter(prefix="/verification", tags=["verification"])


@router.post("/requests", status_code=201)
async def submit_verification(
    photo: Optional[UploadFile] = File(None),
    selectedBrand: str = Form(""),
    brandCode: str = Form(""),
    deviceLat: Optional[float] = Form(None),
    deviceLng: Optional[float] = Form(None),
    deviceLocObtainedAt: Optional[datetime] = Form(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Submit a photo and/or brand code. Exactly one pending request is created."""
    image = None
    if photo is not None and photo.filename:
        # Read one byte past the limit so oversize uploads are rejected without buffering them whole.
        data = await photo.read(settings.max_upload_bytes + 1)
        image = UploadedImage(
            data=data,
            content_type=photo.content_type or "",
            filename=photo.filename,
        )

    device_location = None
    if deviceLat is not None or deviceLng is not None:
        if deviceLat is None or deviceLng is None:
            raise ValidationError("deviceLat and deviceLng must be provided together")
        device_location = DeviceLocation(lat=deviceLat, lng=deviceLng, obtained_at=deviceLocObtainedAt)

    service = SubmissionService(
        SqlVerificationRequestRepository(db),
        SqlUserStateRepository(db),
        get_storage(),
    )
    request = await service.submit(
        principal,
        image=image,
        selected_brand=selectedBrand,
        brand_code=brandCode,
        device_location=device_location,
    )
    return request_to_dict(request)


@router.get("/me")
async def get_my_verification(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Current verification state plus the most recent request."""
    user = await SqlUserStateRepository(db).get(principal.user_id)
    recent = await SqlVerificationRequestRepository(db).list_recent_for_user(principal.user_id, 1)
    return {
        **user_state_to_dict(user, principal.user_id),
        "currentRequest": request_to_dict(recent[0]) if recent else None,
    }


@router.get("/me/requests")
async def list_my_requests(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    history = await SqlVerificationRequestRepository(db).list_all_for_user(principal.user_id)
    return {"requests": [request_to_dict(r) for r in history], "total": len(history)}


@router.put("/me/store-location")
async def set_store_location(
    req: StoreLocationUpdate,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """Save the store's coordinates and rescore the current request."""
    users = SqlUserStateRepository(db)
    requests = SqlVerificationRequestRepository(db)
    user = await users.get_or_create(
        principal.user_id, principal.email, principal.name, principal.store_name,
    )
    user.store_lat = req.lat
    user.store_lng = req.lng

    recent = await requests.list_recent_for_user(principal.user_id, 1)
    if recent and recent[0].status == "pending":
        apply_score(recent[0], user)
    await users.commit()
    return user_state_to_dict(user)


@router.get("/daily-code")
async def get_daily_code():
    """Today's audit code. Not a secret."""
    return {"code": daily_code(), "timezone": settings.daily_code_timezone}


@router.get("/brands")
async def get_brand_sources():
    return {"brands": list_brand_sources()}
