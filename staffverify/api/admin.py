"""Admin review endpoints for verification requests."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from staffverify.core.auth import Principal, require_admin
from staffverify.database import get_db
from staffverify.schemas.verification import RejectDecisionRequest, ReviewDecisionRequest
from staffverify.services.reconciliation_service import ReconciliationService
from staffverify.services.review_service import ReviewService
from staffverify.services.storage_service import get_storage
from staffverify.services.submission_service import request_to_dict

router = APIRouter(prefix="/admin/verification", tags=["admin"])


@router.get("/requests")
async def list_requests(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All requests, newest submission first."""
    service = ReviewService(db)
    result = await service.list_requests(status, page, page_size)
    result["pending_count"] = await service.pending_count()
    return result


@router.get("/requests/{request_id}")
async def get_request(
    request_id: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return request_to_dict(await ReviewService(db).get_request(request_id))


@router.post("/requests/{request_id}/approve")
async def approve_request(
    request_id: str,
    req: Optional[ReviewDecisionRequest] = None,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    notes = req.notes if req else ""
    request = await ReviewService(db).approve(request_id, notes, reviewer_id=admin.user_id)
    return request_to_dict(request)


@router.post("/requests/{request_id}/reject")
async def reject_request(
    request_id: str,
    req: RejectDecisionRequest,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    request = await ReviewService(db).reject(request_id, req.notes, reviewer_id=admin.user_id)
    return request_to_dict(request)


@router.delete("/requests/{request_id}")
async def delete_request(
    request_id: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Permanently remove a request. The user's verification state is not touched."""
    await ReviewService(db).delete(request_id, actor_id=admin.user_id)
    return {"deleted": True, "id": request_id}


@router.post("/reconcile")
async def run_reconciliation(
    repair: bool = True,
    remove_orphans: bool = False,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    service = ReconciliationService(db, get_storage())
    report = await service.reconcile(repair=repair)
    report["orphaned_uploads"] = await service.find_orphaned_uploads(remove=remove_orphans)
    return report


@router.get("/users/{user_id}/consistency")
async def check_user_consistency(
    user_id: str,
    admin: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """409 with the expected and actual states when the user has drifted."""
    await ReconciliationService(db).assert_user_consistent(user_id)
    return {"user_id": user_id, "consistent": True}
