"""Stdio transport: owns the language server process and its framed byte stream."""

import asyncio
import logging
import os
from typing import AsyncIterator, Callable, Dict, List, Optional

from .errors import SpawnFailureError, TransportBrokenError
from .framing import FrameDecoder, encode_frame

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
DEFAULT_TERMINATE_TIMEOUT = 5.0


class StdioTransport:
    """Spawns a process and exchanges Content-Length frames over its stdio.

    Outgoing frames are serialised by a lock so concurrent senders never
    interleave. Incoming bytes are buffered in a ``FrameDecoder`` owned by
    the transport; ``receive()`` may be called again after it raised and
    will pick up where the previous iteration stopped.
    """

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        stderr_sink: Optional[Callable[[str], None]] = None,
        read_chunk_size: int = READ_CHUNK_SIZE,
    ):
        self.command = command
        self.args = list(args or [])
        self.env = env
        self.cwd = cwd
        self._stderr_sink = stderr_sink
        self._read_chunk_size = read_chunk_size
        self._process: Optional[asyncio.subprocess.Process] = None
        self._decoder = FrameDecoder()
        self._write_lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()
        self._stderr_task: Optional[asyncio.Task] = None
        self._closed = False
        self._eof = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def at_eof(self) -> bool:
        """True once the process's output stream has closed."""
        return self._eof

    async def start(self) -> None:
        """Start the language server process.

        Raises:
            SpawnFailureError: If the executable is missing or not runnable.
        """
        if self._process is not None:
            return

        env = {**os.environ, **(self.env or {})}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise SpawnFailureError(self.command, f"not found ({e.strerror})") from e
        except PermissionError as e:
            raise SpawnFailureError(self.command, f"not runnable ({e.strerror})") from e
        except OSError as e:
            raise SpawnFailureError(self.command, str(e)) from e

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug("Spawned %s (pid %s)", self.command, self._process.pid)

    async def send(self, payload: bytes) -> None:
        """Write one complete frame to the process's stdin.

        Raises:
            TransportBrokenError: If the process is gone or the pipe fails.
        """
        process = self._process
        if process is None or self._closed or process.stdin is None:
            raise TransportBrokenError("transport is not open")

        frame = encode_frame(payload)
        async with self._write_lock:
            if process.stdin.is_closing():
                raise TransportBrokenError("process stdin is closed")
            try:
                process.stdin.write(frame)
                await process.stdin.drain()
            except OSError as e:
                raise TransportBrokenError(f"write to language server failed: {e}") from e

    async def receive(self) -> AsyncIterator[bytes]:
        """Yield complete payloads until the output stream closes.

        Raises:
            ProtocolViolationError: On a malformed header. The bad block is
                already discarded; call ``receive()`` again to continue.
            TransportBrokenError: If reading from the process fails.
        """
        process = self._process
        if process is None or process.stdout is None:
            raise TransportBrokenError("transport is not open")

        while True:
            frame = self._decoder.next_frame()
            if frame is not None:
                yield frame
                continue

            if self._eof:
                return
            try:
                chunk = await process.stdout.read(self._read_chunk_size)
            except OSError as e:
                raise TransportBrokenError(f"read from language server failed: {e}") from e

            if not chunk:
                self._eof = True
                if self._decoder.has_partial:
                    logger.warning(
                        "Output stream closed with %d bytes of an incomplete frame",
                        self._decoder.buffered,
                    )
                return
            self._decoder.feed(chunk)

    async def close(self, timeout: float = DEFAULT_TERMINATE_TIMEOUT) -> None:
        """Terminate the process (signal, wait, then kill) and release the pipes.

        Safe to call more than once.
        """
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True

            process = self._process
            if process is None:
                return

            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()

            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("%s did not exit after %ss, killing it", self.command, timeout)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

            if self._stderr_task is not None:
                try:
                    await asyncio.wait_for(self._stderr_task, timeout=1.0)
                except asyncio.TimeoutError:
                    self._stderr_task.cancel()
                self._stderr_task = None

            logger.debug("%s exited with code %s", self.command, process.returncode)

    async def _drain_stderr(self) -> None:
        """Forward the process's stderr, line by line, to the sink."""
        stream = self._process.stderr if self._process else None
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except (OSError, ValueError) as e:
                logger.debug("Stopped reading server stderr: %s", e)
                return
            if not line:
                return
            text = line.decode('utf-8', errors='replace').rstrip('\r\n')
            if not text:
                continue
            if self._stderr_sink is not None:
                self._stderr_sink(text)
            else:
                logger.debug("Server output: %s", text)
