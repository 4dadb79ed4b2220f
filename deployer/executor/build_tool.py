"""
Build Tool
==========
Runs the application build command (e.g. `npm ci && npm run build`) on the
host source tree and reports the outcome.

BOUNDARY RULES:
    - The build tool ONLY executes the configured command.
    - It never touches credentials; the caller materializes any build-time
      secret before invoking it and removes it afterwards.
    - Any non-zero exit is fatal to the run.
"""
import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Optional

from deployer.core.errors import CollaboratorUnavailable, RemoteOperationFailure

logger = logging.getLogger(__name__)

_EXCERPT_HEAD_LINES = 20
_EXCERPT_TAIL_LINES = 40


@dataclass
class BuildToolResult:
    exit_code: int = -1
    log_excerpt: str = ""
    execution_time_seconds: float = 0.0


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """Keep the first `head` and last `tail` lines of a long log."""
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    omitted = total - head - tail
    return "\n".join(
        lines[:head]
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + lines[-tail:]
    )


async def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    await proc.wait()


async def run_build_command(
    source_dir: str,
    command: str,
    timeout_seconds: Optional[float] = None,
) -> BuildToolResult:
    """
    Execute the build command through bash inside `source_dir`.

    The command runs in its own process group; a timeout or cancellation
    kills the whole group before returning.

    Raises
    ------
    CollaboratorUnavailable
        The source directory or bash itself is missing.
    RemoteOperationFailure
        The command exited non-zero or exceeded its timeout.
    """
    if not os.path.isdir(source_dir):
        raise CollaboratorUnavailable(f"Source directory not found: {source_dir}")

    result = BuildToolResult()
    start_time = time.monotonic()
    logger.info("Running build command in %s: %s", source_dir, command)

    try:
        proc = await asyncio.create_subprocess_exec(
            "bash", "-c", command,
            cwd=source_dir,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env={**os.environ, "CI": "true"},
            start_new_session=True,
        )
    except FileNotFoundError:
        raise CollaboratorUnavailable("bash is not available to run the build command")

    try:
        output, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        await _kill_process_group(proc)
        raise RemoteOperationFailure("application build", f"timed out after {timeout_seconds}s")
    except asyncio.CancelledError:
        await _kill_process_group(proc)
        logger.warning("Build command cancelled, process group %d killed", proc.pid)
        raise

    result.exit_code = proc.returncode
    result.log_excerpt = create_log_excerpt((output or b"").decode("utf-8", errors="replace"))
    result.execution_time_seconds = round(time.monotonic() - start_time, 3)

    if proc.returncode != 0:
        logger.error("Build command failed (exit %d):\n%s", proc.returncode, result.log_excerpt)
        raise RemoteOperationFailure("application build", f"exit code {proc.returncode}")

    logger.info("Build command finished in %.2fs", result.execution_time_seconds)
    return result
