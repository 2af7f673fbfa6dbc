"""Matching finalized object paths back to verification requests."""

from datetime import datetime, timedelta, timezone
from urllib.parse import quote

import pytest

from staffverify.repositories.sql import SqlVerificationRequestRepository
from staffverify.services.matcher import (
    RecencyFallbackMatcher,
    StrictPathMatcher,
    TimeWindowMatcher,
    build_matcher,
    references_path,
)
from staffverify.storage.base import build_object_url

BASE = "http://localhost:8000/api/v1/objects"
T0 = datetime(2025, 3, 14, 9, 0, tzinfo=timezone.utc)


def _url(path: str, token: str = "tok") -> str:
    return build_object_url(BASE, path, token)


class TestReferencesPath:
    def test_plain_and_encoded(self):
        from staffverify.models.verification import VerificationRequest

        path = "verification/u1/1700000000000_verification.jpg"
        encoded = VerificationRequest(photo_url=f"{BASE}/{quote(path, safe='')}?alt=media&token=x")
        verbatim = VerificationRequest(photo_url=f"https://cdn.example.com/{path}")
        other = VerificationRequest(photo_url=_url("verification/u1/other.jpg"))
        by_path = VerificationRequest(photo_path=path)

        assert references_path(encoded, path)
        assert references_path(verbatim, path)
        assert not references_path(other, path)
        assert references_path(by_path, path)
        assert not references_path(VerificationRequest(), path)


class TestRecencyFallbackMatcher:
    @pytest.mark.asyncio
    async def test_textual_match_beats_recency(self, db, make_request):
        user = "u-prec"
        p1 = f"verification/{user}/1_verification.jpg"
        p2 = f"verification/{user}/2_verification.jpg"
        p3 = f"verification/{user}/3_verification.jpg"
        await make_request(user, T0, photo_url=_url(p1))
        r2 = await make_request(user, T0 + timedelta(minutes=1), photo_url=_url(p2))
        await make_request(user, T0 + timedelta(minutes=2), photo_url=_url(p3))

        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, p2) == r2.id

    @pytest.mark.asyncio
    async def test_falls_back_to_single_most_recent(self, db, make_request):
        user = "u-fallback"
        only = await make_request(user, T0)
        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, f"verification/{user}/999_verification.jpg") == only.id

    @pytest.mark.asyncio
    async def test_falls_back_to_newest_of_many(self, db, make_request):
        user = "u-many"
        await make_request(user, T0, photo_url=_url(f"verification/{user}/a.jpg"))
        newest = await make_request(user, T0 + timedelta(seconds=5), photo_url=_url(f"verification/{user}/b.jpg"))
        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, f"verification/{user}/c.jpg") == newest.id

    @pytest.mark.asyncio
    async def test_no_candidates_returns_none(self, db, make_request):
        await make_request("someone-else", T0)
        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate("nobody", "verification/nobody/x.jpg") is None

    @pytest.mark.asyncio
    async def test_candidate_window_is_bounded(self, db, make_request):
        user = "u-window"
        old_path = f"verification/{user}/old.jpg"
        await make_request(user, T0, photo_url=_url(old_path))
        for i in range(3):
            await make_request(user, T0 + timedelta(minutes=i + 1))

        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db), candidate_limit=3)
        candidates = await matcher.candidates(user)
        assert len(candidates) == 3
        # The textual match is outside the window, so the newest wins.
        assert await matcher.find_candidate(user, old_path) == candidates[0].id

    @pytest.mark.asyncio
    async def test_stored_photo_path_matches(self, db, make_request):
        user = "u-path"
        path = f"verification/{user}/42_verification.jpg"
        target = await make_request(user, T0, photo_path=path)
        await make_request(user, T0 + timedelta(minutes=1))
        matcher = RecencyFallbackMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, path) == target.id


class TestStrictPathMatcher:
    @pytest.mark.asyncio
    async def test_no_guessing(self, db, make_request):
        user = "u-strict"
        await make_request(user, T0)
        matcher = StrictPathMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, f"verification/{user}/x.jpg") is None

    @pytest.mark.asyncio
    async def test_textual_match(self, db, make_request):
        user = "u-strict2"
        path = f"verification/{user}/x.jpg"
        target = await make_request(user, T0, photo_url=_url(path))
        matcher = StrictPathMatcher(SqlVerificationRequestRepository(db))
        assert await matcher.find_candidate(user, path) == target.id


class TestTimeWindowMatcher:
    @pytest.mark.asyncio
    async def test_pending_photoless_request_inside_window(self, db, make_request):
        user = "u-tw"
        target = await make_request(user, T0)
        matcher = TimeWindowMatcher(
            SqlVerificationRequestRepository(db), window_seconds=300,
            reference_time=T0 + timedelta(minutes=4),
        )
        assert await matcher.find_candidate(user, f"verification/{user}/x.jpg") == target.id

    @pytest.mark.asyncio
    async def test_outside_window_returns_none(self, db, make_request):
        user = "u-tw2"
        await make_request(user, T0)
        matcher = TimeWindowMatcher(
            SqlVerificationRequestRepository(db), window_seconds=300,
            reference_time=T0 + timedelta(minutes=6),
        )
        assert await matcher.find_candidate(user, f"verification/{user}/x.jpg") is None

    @pytest.mark.asyncio
    async def test_skips_decided_and_photo_requests(self, db, make_request):
        user = "u-tw3"
        await make_request(user, T0, status="approved")
        await make_request(user, T0, photo_url=_url(f"verification/{user}/other.jpg"))
        matcher = TimeWindowMatcher(
            SqlVerificationRequestRepository(db), reference_time=T0,
        )
        assert await matcher.find_candidate(user, f"verification/{user}/x.jpg") is None


class TestBuildMatcher:
    def test_known_strategies(self):
        repo = SqlVerificationRequestRepository(db=None)
        assert isinstance(build_matcher("recency_fallback", repo), RecencyFallbackMatcher)
        assert isinstance(build_matcher("strict", repo), StrictPathMatcher)
        tw = build_matcher("time_window", repo, window_seconds=60, reference_time=T0)
        assert isinstance(tw, TimeWindowMatcher)
        assert tw.window == timedelta(seconds=60)

    def test_unknown_strategy_raises(self):
        with pytest.raises(ValueError, match="Unknown matcher strategy"):
            build_matcher("psychic", SqlVerificationRequestRepository(db=None))
