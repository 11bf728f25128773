"""
gitchat.shell

Async subprocess helpers backing the `run_command` tool.
"""
from __future__ import annotations

import asyncio
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class CommandResult:
    ok: bool
    stdout: str
    stderr: str
    exit_code: int
    elapsed_sec: float


async def run_command(
    cmd: List[str],
    cwd: Optional[str | Path] = None,
    timeout_sec: float = 600,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    started = time.monotonic()
    merged_env = os.environ.copy()
    if env:
        merged_env.update(env)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=str(cwd) if cwd is not None else None,
        env=merged_env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        await _terminate_process_tree(proc)
        return CommandResult(
            ok=False,
            stdout="",
            stderr=f"command timed out after {timeout_sec}s",
            exit_code=124,
            elapsed_sec=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        await _terminate_process_tree(proc)
        raise

    exit_code = proc.returncode if proc.returncode is not None else 1
    return CommandResult(
        ok=exit_code == 0,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
        exit_code=exit_code,
        elapsed_sec=time.monotonic() - started,
    )


async def run_shell(command: str, cwd: Optional[str | Path] = None, timeout_sec: float = 600) -> CommandResult:
    return await run_command(["bash", "-lc", command], cwd=cwd, timeout_sec=timeout_sec)


async def _terminate_process_tree(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=2)
        return
    except asyncio.TimeoutError:
        pass
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    await proc.wait()
