"""Tests for core auth, config posture, hashing, background tasks and logging."""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from jose import jwt

from staffverify.config import Settings, settings, validate_security_posture
from staffverify.core.async_tasks import drain_background_tasks, fire_and_forget
from staffverify.core.auth import (
    create_access_token,
    decode_token,
    get_current_principal,
    require_admin,
)
from staffverify.core.exceptions import AuthError, PermissionDeniedError
from staffverify.core.hashing import compute_audit_hash
from staffverify.core.log_config import configure_logging
from staffverify.storage.base import ObjectFinalizedEvent, StorageEventDispatcher


# ===========================================================================
# auth.py
# ===========================================================================


class TestTokens:
    def test_claims(self):
        token = create_access_token("staff-9", email="s9@example.com", name="Nine", store_name="Oak Ave")
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        assert payload["sub"] == "staff-9"
        assert payload["store_name"] == "Oak Ave"
        assert payload["role"] == "staff"
        assert "exp" in payload and "iat" in payload

    def test_expired_token_rejected(self):
        expired = jwt.encode(
            {"sub": "x", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            settings.jwt_secret_key, algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthError):
            decode_token(expired)

    def test_wrong_key_rejected(self):
        forged = jwt.encode({"sub": "x"}, "not-the-key", algorithm=settings.jwt_algorithm)
        with pytest.raises(AuthError):
            decode_token(forged)

    def test_missing_subject_rejected(self):
        token = jwt.encode({"email": "a@b.c"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
        with pytest.raises(AuthError, match="subject"):
            decode_token(token)


class TestPrincipal:
    def test_staff_principal(self):
        token = create_access_token("staff-1", email="s1@example.com", name="Sam")
        principal = get_current_principal(f"Bearer {token}")
        assert principal.user_id == "staff-1"
        assert principal.email == "s1@example.com"
        assert principal.is_admin is False

    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer", "Bearer a b"])
    def test_malformed_header(self, header):
        with pytest.raises(AuthError) as exc:
            get_current_principal(header)
        assert exc.value.status_code == 401

    def test_admin_by_role(self):
        token = create_access_token("boss", role="admin")
        assert require_admin(f"Bearer {token}").is_admin is True

    def test_admin_by_configured_id(self):
        token = create_access_token("boss-7")
        with patch.object(settings, "admin_user_ids", "someone, boss-7"):
            assert require_admin(f"Bearer {token}").user_id == "boss-7"

    def test_staff_is_not_admin(self):
        token = create_access_token("staff-2")
        with pytest.raises(PermissionDeniedError) as exc:
            require_admin(f"Bearer {token}")
        assert exc.value.status_code == 403


# ===========================================================================
# config.py
# ===========================================================================


class TestSecurityPosture:
    def _prod(self, **overrides) -> Settings:
        values = {
            "environment": "production",
            "jwt_secret_key": "a" * 48,
            "storage_event_secret": "b" * 48,
            "cors_origins": "https://staff.example.com",
        }
        values.update(overrides)
        return Settings(**values)

    def test_valid_production(self):
        validate_security_posture(self._prod())

    @pytest.mark.parametrize("overrides", [
        {"jwt_secret_key": "dev-secret-change-in-production"},
        {"cors_origins": "*"},
        {"storage_event_secret": ""},
        {"storage_event_secret": "dev-storage-event-secret-change-in-production"},
        {"storage_event_secret": "a" * 48},
        {"object_store_backend": "s3"},
        {"matcher_strategy": "coin_flip"},
    ])
    def test_fatal_in_production(self, overrides):
        with pytest.raises(RuntimeError, match="FATAL"):
            validate_security_posture(self._prod(**overrides))

    def test_insecure_defaults_only_warn_in_development(self):
        dev = Settings(environment="development", jwt_secret_key="dev-secret-change-in-production")
        with pytest.warns(UserWarning, match="JWT_SECRET_KEY"):
            validate_security_posture(dev)

    def test_admin_ids_parsing(self):
        assert Settings(admin_user_ids=" a, b ,,c ").admin_ids == {"a", "b", "c"}


# ===========================================================================
# hashing.py
# ===========================================================================


class TestAuditHash:
    def test_matches_manual_sha256(self):
        expected = hashlib.sha256(
            "GENESIS|verification.approved|admin-1|{}|info|2025-01-01T00:00:00+00:00".encode()
        ).hexdigest()
        assert compute_audit_hash(
            None, "verification.approved", "admin-1", "{}", "info", "2025-01-01T00:00:00+00:00",
        ) == expected

    def test_system_actor_and_chaining(self):
        first = compute_audit_hash(None, "e", None, "{}", "info", "t")
        second = compute_audit_hash(first, "e", None, "{}", "info", "t")
        assert first != second
        assert len(second) == 64


# ===========================================================================
# async_tasks.py and the storage event dispatcher
# ===========================================================================


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_fire_and_forget_runs_and_drains(self):
        done = []

        async def _work():
            await asyncio.sleep(0)
            done.append(True)

        task = fire_and_forget(_work(), task_name="unit")
        assert task is not None
        await drain_background_tasks(timeout_seconds=1.0)
        assert done == [True]

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog):
        async def _boom():
            raise RuntimeError("kaput")

        with caplog.at_level(logging.ERROR, logger="staffverify.core.async_tasks"):
            fire_and_forget(_boom(), task_name="boom")
            await drain_background_tasks(timeout_seconds=1.0)
            await asyncio.sleep(0)
        assert "Background task failed: boom" in caplog.text

    def test_no_running_loop_drops_task(self):
        async def _never():
            pass

        assert fire_and_forget(_never(), task_name="orphan") is None


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_prefix_filtering(self):
        seen = []

        async def _handler(event):
            seen.append(event.name)

        dispatcher = StorageEventDispatcher()
        dispatcher.subscribe("verification/", _handler)

        assert dispatcher.emit(ObjectFinalizedEvent(name="verification/u/1.jpg")) == 1
        assert dispatcher.emit(ObjectFinalizedEvent(name="verification-redacted/u/1.jpg")) == 0
        assert dispatcher.emit(ObjectFinalizedEvent(name="avatars/u.png")) == 0
        await drain_background_tasks(timeout_seconds=1.0)

        assert seen == ["verification/u/1.jpg"]
        dispatcher.clear()
        assert dispatcher.subscriber_count == 0


# ===========================================================================
# log_config.py
# ===========================================================================


def test_configure_logging_quiets_noisy_libraries():
    root = configure_logging("debug")
    try:
        assert root.level == logging.DEBUG
        assert logging.getLogger("azure").level == logging.WARNING
        assert logging.getLogger("PIL").level == logging.WARNING
        handler_count = len(root.handlers)
        configure_logging("debug")
        assert len(root.handlers) == handler_count
    finally:
        configure_logging(settings.log_level)
