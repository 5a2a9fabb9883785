"""Bounded subprocess execution for the Android inspection tools."""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from appforge.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ToolResult:
    """Outcome of one external tool invocation.

    ``spawn_failed`` means the binary could not be started at all, which is
    different from the tool running and exiting non-zero.
    """

    ok: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    spawn_failed: bool = False
    timed_out: bool = False


ToolRunner = Callable[[list[str]], Awaitable[ToolResult]]


class OutputTooLargeError(Exception):
    """A tool wrote more than the allowed number of bytes to one stream."""


async def _read_bounded(stream: asyncio.StreamReader, limit: int) -> bytes:
    buffer = bytearray()
    while chunk := await stream.read(64 * 1024):
        buffer.extend(chunk)
        if len(buffer) > limit:
            raise OutputTooLargeError(f"more than {limit} bytes")
    return bytes(buffer)


async def run_tool(
    args: list[str],
    timeout: float = 10.0,
    max_output_bytes: int = 2 * 1024 * 1024,
) -> ToolResult:
    """
    Run ``args`` without a shell, bounded by ``timeout`` and output size.

    Output is read incrementally; the process is killed as soon as either
    stream passes ``max_output_bytes`` or the timeout expires.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        logger.bind(tool=args[0], error=str(e)).debug("tool_spawn_failed")
        return ToolResult(ok=False, stderr=str(e), spawn_failed=True)

    readers = [
        asyncio.ensure_future(_read_bounded(proc.stdout, max_output_bytes)),
        asyncio.ensure_future(_read_bounded(proc.stderr, max_output_bytes)),
    ]

    async def collect() -> tuple[bytes, bytes]:
        stdout, stderr = await asyncio.gather(*readers)
        await proc.wait()
        return stdout, stderr

    try:
        stdout, stderr = await asyncio.wait_for(collect(), timeout=timeout)
    except (TimeoutError, OutputTooLargeError) as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

        if isinstance(e, TimeoutError):
            logger.bind(tool=args[0], timeout=timeout).warning("tool_timed_out")
            return ToolResult(ok=False, stderr=f"{args[0]} timed out", timed_out=True)
        logger.bind(tool=args[0], limit=max_output_bytes).warning("tool_output_too_large")
        return ToolResult(ok=False, stderr=f"{args[0]} output exceeded {max_output_bytes} bytes")

    return ToolResult(
        ok=proc.returncode == 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        returncode=proc.returncode,
    )
