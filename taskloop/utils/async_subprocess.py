"""Async subprocess utilities.

Runs the external ``tk`` and ``jj`` executables without blocking the event
loop. Commands are always given as discrete arguments; nothing goes through a
shell, since ticket titles and commit messages are agent-authored text.

Example:
    >>> from taskloop.utils.async_subprocess import run_command
    >>> stdout, stderr, code = await run_command("jj", "diff", cwd="/repo")
    >>> if code == 0:
    ...     print(stdout)

Thread Safety:
    Safe to call concurrently from multiple async tasks. Each call creates an
    independent subprocess with no shared state.
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
        *args: Executable followed by its arguments, e.g. ``"tk", "close", "t-1a2b"``
        cwd: Working directory. Ticket and VCS commands resolve their
            repository from it, so it selects which workspace they act on.
        check: Raise ``CalledProcessError`` on a non-zero exit code.
        timeout: Seconds to wait before the process is killed and
            ``TimeoutError`` is raised. None waits indefinitely.

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with
        replacement for invalid bytes.

    Raises:
        subprocess.CalledProcessError: If check=True and the command failed.
        TimeoutError: If the timeout is exceeded. The process is killed first.
        FileNotFoundError: If the executable is not on PATH.
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
    except TimeoutError:
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
