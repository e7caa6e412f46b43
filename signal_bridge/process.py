"""Async subprocess helper shared by the transports."""

import asyncio
import subprocess
from typing import Optional


async def run_subprocess_async(
    cmd: list[str],
    timeout: float,
    input_data: Optional[bytes] = None,
    cwd: Optional[str] = None
) -> tuple[int, str, str]:
    """
    Run a subprocess without blocking the event loop.

    The child is killed on timeout and on task cancellation, so a hung
    signal-cli never outlives the poll that started it.

    Args:
        cmd: Command and arguments
        timeout: Timeout in seconds
        input_data: Optional bytes to send to stdin
        cwd: Working directory

    Returns:
        (returncode, stdout, stderr)

    Raises:
        subprocess.TimeoutExpired: the command ran longer than `timeout`
    """
    proc = None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input_data else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=input_data),
                timeout=timeout
            )
            return proc.returncode, stdout.decode('utf-8', errors='replace'), stderr.decode('utf-8', errors='replace')

        except asyncio.TimeoutError:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass  # Already dead
            raise subprocess.TimeoutExpired(cmd, timeout)

    except asyncio.CancelledError:
        if proc is not None:
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
        raise
