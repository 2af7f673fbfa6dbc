"""Geofence auto-score for verification requests.

Compares the claim location (device fix preferred, else EXIF GPS) with the
user's saved store location. The score is informational for reviewers and
never decides a request by itself.
"""
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from staffverify.config import settings
from staffverify.models.user import UserVerificationState
from staffverify.models.verification import VerificationRequest

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000

# Linear falloff of geo points between these distances
_FULL_POINTS_M = 50
_ZERO_POINTS_M = 1500


@dataclass
class LocationScore:
    auto_score: int = 0
    reasons: list[str] = field(default_factory=list)
    distance_m: Optional[int] = None
    loc_source: Optional[str] = None


def meters_between(lat1: float, lng1: float, lat2: float, lng2: float) -> int:
    """Great-circle (haversine) distance in whole meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return round(EARTH_RADIUS_M * c)


def geo_points(distance_m: int) -> int:
    if distance_m <= _FULL_POINTS_M:
        return 100
    if distance_m >= _ZERO_POINTS_M:
        return 0
    span = _ZERO_POINTS_M - _FULL_POINTS_M
    return max(0, round(100 * (1 - (distance_m - _FULL_POINTS_M) / span)))


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def score_location(
    claim_lat: Optional[float],
    claim_lng: Optional[float],
    source: Optional[str],
    store_lat: Optional[float],
    store_lng: Optional[float],
    captured_at: Optional[datetime] = None,
    reference_time: Optional[datetime] = None,
    match_m: Optional[int] = None,
    near_m: Optional[int] = None,
    freshness_seconds: Optional[int] = None,
) -> LocationScore:
    """Score one claim location against a store location.

    ``captured_at`` is compared with ``reference_time`` (the submission
    time) so re-scoring the same record always yields the same reasons.
    """
    match_m = settings.geofence_match_m if match_m is None else match_m
    near_m = settings.geofence_near_m if near_m is None else near_m
    if freshness_seconds is None:
        freshness_seconds = settings.capture_freshness_seconds

    result = LocationScore(loc_source=source if claim_lat is not None and claim_lng is not None else None)
    has_claim = claim_lat is not None and claim_lng is not None
    has_store = store_lat is not None and store_lng is not None

    if not has_claim or not has_store:
        if not has_claim:
            result.reasons.append("NO_VERIFICATION_GPS")
        if not has_store:
            result.reasons.append("NO_STORE_LOC")
    else:
        distance = None
        try:
            distance = meters_between(claim_lat, claim_lng, store_lat, store_lng)
        except (TypeError, ValueError):
            distance = None
        if distance is None or not math.isfinite(distance):
            result.reasons.append("INVALID_COORDS")
        else:
            result.distance_m = distance
            kind = "DEVICE" if source == "device" else "EXIF"
            if distance <= match_m:
                result.reasons.append(f"GEO_{kind}_MATCH")
            elif distance <= near_m:
                result.reasons.append(f"GEO_{kind}_NEAR")
            else:
                result.reasons.append("GEO_OUT_OF_RANGE")
            result.auto_score = geo_points(distance)

    captured_at = _as_utc(captured_at)
    reference_time = _as_utc(reference_time) or datetime.now(timezone.utc)
    if captured_at is not None:
        if abs((reference_time - captured_at).total_seconds()) <= freshness_seconds:
            result.reasons.append("FRESH_CAPTURE")
        else:
            result.reasons.append("STALE_CAPTURE")

    result.auto_score = max(0, min(100, result.auto_score))
    return result


def score_request(
    request: VerificationRequest, user: Optional[UserVerificationState]
) -> LocationScore:
    """Score a stored request with its user's saved store location."""
    if request.device_lat is not None and request.device_lng is not None:
        lat, lng, source = request.device_lat, request.device_lng, "device"
        captured_at = request.device_loc_obtained_at
    elif request.has_gps and request.gps_lat is not None and request.gps_lng is not None:
        lat, lng, source = request.gps_lat, request.gps_lng, "exif"
        captured_at = None
    else:
        lat, lng, source, captured_at = None, None, None, None

    return score_location(
        lat,
        lng,
        source,
        user.store_lat if user else None,
        user.store_lng if user else None,
        captured_at=captured_at,
        reference_time=request.submitted_at,
    )


def apply_score(
    request: VerificationRequest, user: Optional[UserVerificationState]
) -> bool:
    """Write the score onto ``request`` only when it changed. Returns True if written."""
    score = score_request(request, user)
    current_reasons = json.loads(request.score_reasons or "[]")
    if (
        request.auto_score == score.auto_score
        and request.distance_m == score.distance_m
        and request.loc_source == score.loc_source
        and current_reasons == score.reasons
    ):
        return False

    request.auto_score = score.auto_score
    request.score_reasons = json.dumps(score.reasons)
    request.distance_m = score.distance_m
    request.loc_source = score.loc_source
    logger.debug(
        "Scored request %s: %d (%s)", request.id, score.auto_score, ",".join(score.reasons),
    )
    return True
