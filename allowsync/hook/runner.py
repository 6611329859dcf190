"""after_update_hook execution for allowsync.

The hook is a single shell command string (e.g. ``nginx -t && nginx -s reload``)
run through ``bash -c`` and awaited to completion. Output is inherited from
the daemon so it lands in the same journal.

Exit status contract:
  0                  → success
  non-zero           → HookError(exit_code=<code>)
  killed by a signal → HookError(exit_code=None), no exit code to report
  cannot launch      → HookError(exit_code=None)

No timeout is imposed unless the caller passes one. The hook runs in its own
session; on timeout or cancellation the whole process group is killed and
reaped, so children of a compound command do not outlive it.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from typing import Optional

from allowsync.constants import HOOK_SHELL
from allowsync.errors import HookError
from allowsync.utils.logger import get_logger

logger = get_logger(__name__)


async def run_hook(command: str, timeout: Optional[float] = None) -> None:
    """Run ``command`` via ``bash -c`` and wait for it to exit.

    Args:
        command: Shell command string.
        timeout: Seconds to wait before killing the process group. None waits
            forever.

    Raises:
        HookError: launch failure, timeout, signal termination or non-zero exit.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            HOOK_SHELL, "-c", command, start_new_session=True
        )
    except OSError as exc:
        raise HookError("Failed to run after_update_hook", str(exc)) from exc

    logger.info("after_update_hook started", pid=process.pid)
    try:
        returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise HookError(
            "after_update_hook timed out", f"killed after {timeout}s"
        ) from exc
    finally:
        await _kill_group(process)

    if returncode < 0:
        raise HookError(
            "Failed to get after_update_hook exit code",
            f"terminated by signal {-returncode}",
        )
    if returncode != 0:
        raise HookError(
            "after_update_hook exited with non zero code",
            f"exit code {returncode}",
            exit_code=returncode,
        )
    logger.info("after_update_hook completed", pid=process.pid)


async def _kill_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the hook's process group and reap bash, if it is still running."""
    if process.returncode is not None:
        return
    logger.warning("Killing after_update_hook process group", pid=process.pid)
    with contextlib.suppress(ProcessLookupError):
        os.killpg(process.pid, signal.SIGKILL)
    # Reaping must finish even when the caller is being cancelled
    await asyncio.shield(process.wait())
