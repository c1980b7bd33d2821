"""Tests for the in-process rate limit buckets used when Redis is absent."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from brewstore.service import runtime as runtime_module
from brewstore.service.runtime import Runtime, check_rate_limit


class TestLocalBuckets:
    @pytest.fixture
    def mock_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    async def test_limit_then_refusal(self, mock_runtime):
        for _ in range(3):
            assert await check_rate_limit(mock_runtime, "login:1.2.3.4", 3, 60)
        allowed, remaining, reset_seconds = await check_rate_limit(
            mock_runtime, "login:1.2.3.4", 3, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert 0 < reset_seconds <= 20

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "k", 0, 60) is True
        assert mock_runtime._local_rate_limits == {}

    async def test_refilled_buckets_are_evicted(self, mock_runtime, monkeypatch):
        monkeypatch.setattr(runtime_module, "_LOCAL_BUCKET_SWEEP_THRESHOLD", 2)
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        mock_runtime._local_rate_limits.update(
            {
                "login:10.0.0.1": (4.0, past, past),
                "login:10.0.0.2": (0.0, past, past),
                "reset:10.0.0.3": (0.0, past, later),
            }
        )
        assert await check_rate_limit(mock_runtime, "login:10.0.0.4", 5, 60)
        assert set(mock_runtime._local_rate_limits) == {"reset:10.0.0.3", "login:10.0.0.4"}
        tokens, _, full_at = mock_runtime._local_rate_limits["login:10.0.0.4"]
        assert tokens == 4.0
        assert full_at > datetime.now(timezone.utc)

    async def test_small_tables_are_left_alone(self, mock_runtime):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        mock_runtime._local_rate_limits["login:10.0.0.1"] = (5.0, past, past)
        await check_rate_limit(mock_runtime, "login:10.0.0.2", 5, 60)
        assert "login:10.0.0.1" in mock_runtime._local_rate_limits

    async def test_redis_path_bypasses_local_buckets(self, mock_runtime):
        mock_runtime.cache = AsyncMock()
        mock_runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        assert await check_rate_limit(mock_runtime, "k", 5, 60)
        mock_runtime.cache.check_rate_limit.assert_awaited_once()
        assert mock_runtime._local_rate_limits == {}
