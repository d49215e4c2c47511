"""Tests for tamma/utils: async_retry and run_command."""

import asyncio
import subprocess
from unittest.mock import AsyncMock, patch

import pytest

from tamma.utils.async_subprocess import run_command
from tamma.utils.retry import async_retry


class TestAsyncRetry:
    """Test async_retry decorator."""

    @pytest.mark.asyncio
    async def test_successful_call_no_retry(self):
        call_count = 0

        @async_retry(max_attempts=3)
        async def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_func() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_max_attempts_exhausted(self):
        call_count = 0

        @async_retry(max_attempts=3, exceptions=(ValueError,))
        async def always_fails():
            nonlocal call_count
            call_count += 1
            raise ValueError("Persistent failure")

        with patch("asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(ValueError, match="Persistent failure"):
                await always_fails()

        assert call_count == 3

    @pytest.mark.asyncio
    async def test_exponential_backoff(self):
        sleep_times = []

        @async_retry(max_attempts=4, backoff_factor=2.0, exceptions=(ValueError,))
        async def always_fails():
            raise ValueError("Failure")

        async def mock_sleep(delay):
            sleep_times.append(delay)

        with patch("asyncio.sleep", side_effect=mock_sleep):
            with pytest.raises(ValueError):
                await always_fails()

        assert sleep_times == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_zero_backoff_retries_immediately(self):
        sleep_times = []

        @async_retry(max_attempts=2, backoff_factor=0, exceptions=(ValueError,))
        async def always_fails():
            raise ValueError("Failure")

        async def mock_sleep(delay):
            sleep_times.append(delay)

        with patch("asyncio.sleep", side_effect=mock_sleep):
            with pytest.raises(ValueError):
                await always_fails()

        assert sleep_times == [0.0]

    @pytest.mark.asyncio
    async def test_unlisted_exception_propagates(self):
        call_count = 0

        @async_retry(max_attempts=3, exceptions=(ValueError,))
        async def wrong_error():
            nonlocal call_count
            call_count += 1
            raise KeyError("nope")

        with pytest.raises(KeyError):
            await wrong_error()

        assert call_count == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self):
        seen = []

        @async_retry(max_attempts=2, backoff_factor=0, exceptions=(ValueError,), on_retry=lambda n, e: seen.append(n))
        async def always_fails():
            raise ValueError("Failure")

        with pytest.raises(ValueError):
            await always_fails()

        assert seen == [1]


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_captures_output(self):
        stdout, stderr, returncode = await run_command("echo", "hello")

        assert stdout.strip() == "hello"
        assert stderr == ""
        assert returncode == 0

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_check(self):
        _, _, returncode = await run_command("false", check=False)

        assert returncode != 0

    @pytest.mark.asyncio
    async def test_non_zero_exit_with_check(self):
        with pytest.raises(subprocess.CalledProcessError):
            await run_command("false")

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        stdout, _, _ = await run_command("pwd", cwd=tmp_path)

        assert stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        with pytest.raises(asyncio.TimeoutError):
            await run_command("sleep", "5", timeout=0.05)

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(FileNotFoundError):
            await run_command("definitely-not-a-real-binary-tamma")
