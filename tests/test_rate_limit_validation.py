"""Tests for the token-bucket limiter in runtime.py.

Redis is used when configured; otherwise a per-process bucket applies.
Invalid window_seconds should be logged and default to 60 seconds.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from idgate.storage.redis_cache import _rate_key, _unpack


class TestCheckRateLimit:
    """Tests for the check_rate_limit function."""

    @pytest.fixture
    def mock_runtime(self):
        """Create a mock runtime with no Redis cache."""
        from idgate.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        """Create a mock runtime with Redis cache."""
        from idgate.service.runtime import Runtime

        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=(True, 4, 0))
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        """Rate limit of 0 or negative always passes."""
        from idgate.service.runtime import check_rate_limit

        allowed, _, _ = await check_rate_limit(mock_runtime, "test_key", 0, 60)
        assert allowed is True

        allowed, _, _ = await check_rate_limit(mock_runtime, "test_key", -1, 60)
        assert allowed is True

    async def test_invalid_window_logs_warning(self, mock_runtime):
        """Invalid window_seconds logs warning and defaults to 60."""
        from idgate.service.runtime import check_rate_limit

        with patch("idgate.service.runtime.logger") as mock_logger:
            allowed, _, _ = await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0
        assert allowed is True

    async def test_local_bucket_exhausts(self, mock_runtime):
        """The sixth attempt inside the window is refused with a retry hint."""
        from idgate.service.runtime import check_rate_limit

        results = [await check_rate_limit(mock_runtime, "login:alice", 5, 60) for _ in range(6)]
        assert [r[0] for r in results] == [True] * 5 + [False]
        assert results[4][1] == 0
        assert results[5][2] >= 1

    async def test_local_buckets_are_per_key(self, mock_runtime):
        from idgate.service.runtime import check_rate_limit

        for _ in range(2):
            await check_rate_limit(mock_runtime, "login:alice", 2, 60)
        allowed, _, _ = await check_rate_limit(mock_runtime, "login:bob", 2, 60)
        assert allowed is True

    async def test_cache_is_preferred(self, mock_runtime_with_cache):
        """When Redis is configured the local bucket is not consulted."""
        from idgate.service.runtime import check_rate_limit

        result = await check_rate_limit(mock_runtime_with_cache, "k", 5, 60)
        assert result == (True, 4, 0)
        mock_runtime_with_cache.cache.check_rate_limit.assert_awaited_once_with("k", 5, 60)


class TestRedisHelpers:
    def test_rate_key_hides_raw_identifier(self):
        key = _rate_key("forgot_password:alice@example.com:127.0.0.1")
        assert key.startswith("idgate:rate:")
        assert "alice" not in key

    def test_unpack(self):
        assert _unpack([1, 3, 0]) == (True, 3, 0)
        assert _unpack([0, 0, 12]) == (False, 0, 12)
