"""
Process runner for the external encoder and prober binaries.

Starts a process, streams its diagnostic output line by line and reports
the exit status. Output parsing is left to the caller and nothing is
retried here.
"""

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

from ..errors import ProcessError, SpawnError, STDERR_TAIL_CHARS

logger = logging.getLogger("media_worker")

# ffmpeg rewrites its status line with a bare carriage return
LINE_SPLIT = re.compile(r"\r\n|\r|\n")
READ_CHUNK = 4096

LineCallback = Callable[[str], None]


@dataclass
class ProcessOutput:
    """Collected output of a finished process"""
    exit_code: int
    stdout: str
    stderr_tail: str


class ProcessHandle:
    """A started process: a stream of stderr lines plus a completion signal"""

    def __init__(self, process: asyncio.subprocess.Process, binary: str):
        self.process = process
        self.binary = binary
        self.stderr_tail = ""
        self._stdout_chunks: List[bytes] = []
        self._stdout_task = asyncio.ensure_future(self._drain_stdout())

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    async def _drain_stdout(self) -> None:
        if self.process.stdout is None:
            return
        while True:
            chunk = await self.process.stdout.read(65536)
            if not chunk:
                break
            self._stdout_chunks.append(chunk)

    def _remember(self, text: str) -> None:
        self.stderr_tail = (self.stderr_tail + text)[-STDERR_TAIL_CHARS:]

    async def lines(self) -> AsyncIterator[str]:
        """Yield stderr lines, splitting on both newline and carriage return"""
        buffer = ""
        # A multi-byte character may straddle two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await self.process.stderr.read(READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            self._remember(text)
            buffer += text
            if not chunk:
                break
            parts = LINE_SPLIT.split(buffer)
            buffer = parts.pop()
            for line in parts:
                if line:
                    yield line
        for line in LINE_SPLIT.split(buffer):
            if line:
                yield line

    async def wait(self) -> int:
        code = await self.process.wait()
        await self._stdout_task
        return code

    @property
    def stdout(self) -> str:
        return b"".join(self._stdout_chunks).decode("utf-8", errors="replace")


class ProcessRunner:
    """Spawns ffmpeg/ffprobe (or any binary) without blocking the event loop"""

    def __init__(self, binaries: Optional[Dict[str, str]] = None):
        self.binaries = dict(binaries or {})

    def resolve(self, binary: str) -> str:
        return self.binaries.get(binary, binary)

    async def start(self, binary: str, args: Sequence[str]) -> ProcessHandle:
        """Start a process; raises SpawnError when it cannot be launched"""
        executable = self.resolve(binary)
        try:
            process = await asyncio.create_subprocess_exec(
                executable, *[str(a) for a in args],
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
            raise SpawnError(executable, str(e)) from e
        logger.debug(f"Started {executable} (pid {process.pid}): {' '.join(str(a) for a in args)}")
        return ProcessHandle(process, executable)

    async def run(self, binary: str, args: Sequence[str],
                  on_line: Optional[LineCallback] = None) -> ProcessOutput:
        """
        Run a process to completion.

        Args:
            binary: Binary identifier or path
            args: Argument list, without the binary itself
            on_line: Called with every stderr line as it arrives

        Returns:
            ProcessOutput with exit code, stdout and the stderr tail

        Raises:
            SpawnError: the binary could not be started
            ProcessError: the process exited non-zero
        """
        handle = await self.start(binary, args)
        async for line in handle.lines():
            if on_line:
                on_line(line)
        exit_code = await handle.wait()
        if exit_code != 0:
            logger.debug(f"{handle.binary} exited with code {exit_code}")
            raise ProcessError(handle.binary, exit_code, handle.stderr_tail)
        return ProcessOutput(exit_code, handle.stdout, handle.stderr_tail)
