"""Pseudo-terminal process handles for agent sessions."""

from __future__ import annotations

import asyncio
import errno
import fcntl
import os
import pty
import signal
import struct
import termios
from typing import Mapping, Protocol, Sequence


class AgentProcess(Protocol):
    """Minimal process surface the session manager relies on."""

    @property
    def pid(self) -> int | None:
        ...

    @property
    def returncode(self) -> int | None:
        ...

    async def read(self) -> bytes:
        """Return the next output chunk, or ``b""`` once output is exhausted."""
        ...

    def write(self, data: str) -> None:
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...

    async def wait(self) -> int:
        ...

    def close(self) -> None:
        ...


class PtyProcess:
    """A child process attached to a pty, read through the event loop."""

    def __init__(self, process: asyncio.subprocess.Process, master_fd: int) -> None:
        self._process = process
        self._master_fd: int | None = master_fd
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Mapping[str, str],
        columns: int = 120,
        rows: int = 40,
    ) -> "PtyProcess":
        master_fd, slave_fd = pty.openpty()
        try:
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=dict(env),
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)
        return cls(process, master_fd)

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, 4096)
        except BlockingIOError:
            return
        except OSError as exc:
            # Linux reports EIO once every slave descriptor is closed.
            if exc.errno not in (errno.EIO, errno.EBADF):
                raise
            data = b""
        if not data:
            self._loop.remove_reader(self._master_fd)
        self._chunks.put_nowait(data)

    async def read(self) -> bytes:
        if self._master_fd is None and self._chunks.empty():
            return b""
        return await self._chunks.get()

    def write(self, data: str) -> None:
        if self._master_fd is None:
            raise BrokenPipeError("pty is closed")
        os.write(self._master_fd, data.encode("utf-8"))

    def _signal_group(self, signum: int) -> None:
        if self._process.returncode is not None:
            return
        try:
            # start_new_session makes the child its own group leader
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            pass

    def terminate(self) -> None:
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        self._signal_group(signal.SIGKILL)

    async def wait(self) -> int:
        return await self._process.wait()

    def close(self) -> None:
        if self._master_fd is None:
            return
        fd, self._master_fd = self._master_fd, None
        self._loop.remove_reader(fd)
        os.close(fd)
        self._chunks.put_nowait(b"")


class FakeAgentProcess:
    """Test double that simulates an interactive agent process."""

    def __init__(
        self,
        argv: Sequence[str] = (),
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        ignore_terminate: bool = False,
    ) -> None:
        self.argv = tuple(argv)
        self.cwd = cwd
        self.env = dict(env or {})
        self.ignore_terminate = ignore_terminate
        self.writes: list[str] = []
        self.signals: list[str] = []
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        self._exited = asyncio.Event()
        self._returncode: int | None = None
        self.closed = False

    @property
    def pid(self) -> int | None:
        return 4242

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def emit(self, text: str) -> None:
        self._chunks.put_nowait(text.encode("utf-8"))

    def exit(self, code: int = 0) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._chunks.put_nowait(b"")
        self._exited.set()

    async def read(self) -> bytes:
        return await self._chunks.get()

    def write(self, data: str) -> None:
        if self._returncode is not None:
            raise BrokenPipeError("process has exited")
        self.writes.append(data)

    def terminate(self) -> None:
        self.signals.append("SIGTERM")
        if not self.ignore_terminate:
            self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.signals.append("SIGKILL")
        self.exit(-signal.SIGKILL)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self._returncode is not None
        return self._returncode

    def close(self) -> None:
        self.closed = True


__all__ = ["AgentProcess", "FakeAgentProcess", "PtyProcess"]
