from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

_KILL_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class ProcessResult:
    returncode: Optional[int]
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False


def _kill_group(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def run_process(
    argv: Sequence[str],
    cwd: Path,
    *,
    input_text: Optional[str] = None,
    timeout_seconds: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ProcessResult:
    """Run ``argv`` to completion with a hard wall-clock timeout.

    On timeout the whole process group is killed and an empty result with
    ``timed_out=True`` is returned. ``OSError`` from launching propagates to
    the caller.
    """
    started = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *argv,
        cwd=str(cwd),
        stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=dict(env) if env is not None else None,
        start_new_session=True,
    )
    payload = input_text.encode("utf-8") if input_text is not None else None
    try:
        stdout, stderr = await asyncio.wait_for(
            process.communicate(payload), timeout=timeout_seconds
        )
    except asyncio.TimeoutError:
        _kill_group(process)
        try:
            await asyncio.wait_for(process.wait(), timeout=_KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            pass
        return ProcessResult(
            returncode=process.returncode,
            stdout="",
            stderr="",
            duration_seconds=time.monotonic() - started,
            timed_out=True,
        )
    except asyncio.CancelledError:
        _kill_group(process)
        raise
    return ProcessResult(
        returncode=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        duration_seconds=time.monotonic() - started,
    )


__all__ = ["ProcessResult", "run_process"]
