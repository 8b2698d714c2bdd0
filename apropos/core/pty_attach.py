"""Attach process running inside a pseudo-terminal.

`tmux attach` (locally or through `ssh -t`) needs a real terminal on its stdio. The
attachment owns the pty master, streams decoded output through an asyncio queue and
forwards keystrokes and window size changes.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Optional, Sequence

from apropos.constants import ATTACH_TERM
from apropos.core.errors import BridgeAttachError

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 65536


def set_window_size(fd: int, cols: int, rows: int) -> None:
    """Set the pty window size with TIOCSWINSZ."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class PtyAttachment:
    """A child process attached to a pty whose master side we own.

    Lifecycle:
        start() spawns the process, read() yields decoded output until EOF (None),
        wait() returns (exit_code, signal) and close() kills and releases everything.
    """

    def __init__(self, argv: Sequence[str], cols: int, rows: int) -> None:
        self.argv = list(argv)
        self.cols = cols
        self.rows = rows
        self._process: Optional[asyncio.subprocess.Process] = None
        self._master_fd: Optional[int] = None
        self._output: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._reading = False
        self._closed = False

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Spawn the attach process.

        Raises:
            BridgeAttachError: The pty or the process could not be created
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise BridgeAttachError(f"pty unavailable: {e}") from e

        env = dict(os.environ)
        # An inherited $TMUX makes tmux refuse to nest
        env["TMUX"] = ""
        env["TERM"] = ATTACH_TERM

        try:
            set_window_size(master_fd, self.cols, self.rows)
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise BridgeAttachError(f"Could not start {self.argv[0]}: {e}") from e

        os.close(slave_fd)
        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._reading = True
        logger.debug("Attach process started: pid=%s argv=%s", self._process.pid, self.argv[0])

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    def _on_readable(self) -> None:
        assert self._master_fd is not None
        try:
            data = os.read(self._master_fd, READ_CHUNK_BYTES)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is closed
            data = b""

        if not data:
            self._stop_reading()
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._output.put_nowait(tail)
            self._output.put_nowait(None)
            return

        text = self._decoder.decode(data)
        if text:
            self._output.put_nowait(text)

    async def read(self) -> Optional[str]:
        """Next decoded output chunk, or None at end of stream."""
        return await self._output.get()

    async def write(self, data: str) -> None:
        if self._closed or self._master_fd is None or not data:
            return
        view = memoryview(data.encode("utf-8"))
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self._closed or self._master_fd is None:
            return
        self.cols, self.rows = cols, rows
        set_window_size(self._master_fd, cols, rows)
        # The child is not the foreground group of a controlling tty, so signal it directly
        if self._process and self._process.returncode is None:
            try:
                os.kill(self._process.pid, signal.SIGWINCH)
            except ProcessLookupError:
                pass

    async def wait(self) -> tuple[Optional[int], Optional[int]]:
        """Wait for the process to exit.

        Returns:
            (exit_code, signal_number); exactly one is set
        """
        assert self._process is not None
        returncode = await self._process.wait()
        if returncode < 0:
            return None, -returncode
        return returncode, None

    async def close(self, timeout: float = 1.0) -> None:
        """Kill the process and release the pty. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._stop_reading()

        process = self._process
        if process and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
        self._output.put_nowait(None)
