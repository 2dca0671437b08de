"""Shared async command utilities for the runtime modules."""

import asyncio


async def run_cmd(cmd: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    """Run a command asynchronously.

    The child is killed and reaped if the timeout expires or the calling
    task is cancelled.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds to wait for completion (None waits forever)

    Returns:
        Tuple of (return_code, stdout, stderr)

    Raises:
        FileNotFoundError: if the executable does not exist
        asyncio.TimeoutError: if the command did not finish in time
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
