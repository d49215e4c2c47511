"""Async subprocess utilities.

Provides non-blocking subprocess execution for the static-analysis gate,
which runs linters such as ruff, pylint, eslint or rubocop inside the
workspace without stalling the event loop.

Example:
    >>> from tamma.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("ruff", "check", ".", cwd="/repo", check=False)
    >>> if code != 0:
    ...     print(stdout)
"""

import asyncio
import subprocess
from pathlib import Path


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Command and arguments as separate strings.
        cwd: Working directory for command execution.
        check: If True, raise CalledProcessError on a non-zero exit code.
        timeout: Maximum seconds to wait. The process is killed and
            TimeoutError is raised when exceeded. None waits indefinitely.

    Returns:
        Tuple of (stdout, stderr, return_code) with output decoded as UTF-8
        (invalid bytes replaced).

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails.
        TimeoutError: If timeout is exceeded.
        FileNotFoundError: If the executable is not found.
        PermissionError: If the executable cannot be executed.

    Note:
        Cancelling the awaiting task kills the child process, so an operator
        cancellation does not leave a linter running in the background.
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )
    except (TimeoutError, asyncio.CancelledError):
        process.kill()
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(
            process.returncode,
            args,
            stdout,
            stderr,
        )

    return stdout, stderr, process.returncode or 0
