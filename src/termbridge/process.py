"""PTY process handle — one child program bound to a pseudo-terminal."""

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from dataclasses import dataclass
from typing import AsyncIterator, Mapping, Sequence

logger = logging.getLogger("termbridge.process")

READ_SIZE = 16384
MAX_DIMENSION = 0xFFFF

# Output queue bounds: reading from the PTY pauses above HIGH_WATER queued
# chunks and resumes once the consumer has drained it to LOW_WATER.
HIGH_WATER = 64
LOW_WATER = 16

# Input buffer bounds in bytes: drain() waits while more than WRITE_HIGH_WATER
# bytes are queued for the child and wakes once the PTY has taken it down to
# WRITE_LOW_WATER.
WRITE_HIGH_WATER = 256 * 1024
WRITE_LOW_WATER = 64 * 1024

# Chunks read from the PTY after the child has been reaped.
_MAX_DRAIN_READS = 64


class SpawnError(RuntimeError):
    """The child program could not be started."""


@dataclass(frozen=True)
class ProcessOutput:
    data: bytes


@dataclass(frozen=True)
class ProcessExit:
    status: int | None


ProcessEvent = ProcessOutput | ProcessExit


def _check_dimension(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Terminal {name} must be an integer, got {value!r}")
    if not 0 < value <= MAX_DIMENSION:
        raise ValueError(f"Terminal {name} out of range: {value}")
    return value


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _claim_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is already the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """A spawned child process attached to the slave side of a PTY.

    Output and exit are delivered in order through events(). The handle
    never respawns: once the child has exited it only accepts no-op calls.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        cols: int,
        rows: int,
        kill_grace: float = 2.0,
    ):
        self._proc = proc
        self._master_fd: int | None = master_fd
        self.cols = cols
        self.rows = rows
        self.kill_grace = kill_grace

        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[ProcessEvent] = asyncio.Queue()
        self._reading = False
        self._eof = False
        self._write_buffer = bytearray()
        self._writing = False
        self._write_ready = asyncio.Event()
        self._write_ready.set()
        self._kill_requested = False
        self._kill_timer: asyncio.TimerHandle | None = None

        self._start_reading()
        self._reaper = self._loop.create_task(self._reap())

    @classmethod
    async def spawn(
        cls,
        program: str,
        args: Sequence[str] = (),
        cols: int = 120,
        rows: int = 40,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        term_name: str = "xterm-256color",
        kill_grace: float = 2.0,
    ) -> "PtyProcess":
        """Start program in a new PTY of the given size.

        Raises SpawnError if the PTY cannot be allocated or the program
        cannot be executed.
        """
        cols = _check_dimension("columns", cols)
        rows = _check_dimension("rows", rows)

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Could not allocate a pseudo-terminal: {e}") from e

        child_env = {**os.environ, **(env or {})}
        child_env["TERM"] = term_name
        child_env["COLUMNS"] = str(cols)
        child_env["LINES"] = str(rows)

        try:
            _set_winsize(master_fd, cols, rows)
            proc = await asyncio.create_subprocess_exec(
                program,
                *args,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=child_env,
                cwd=cwd,
                start_new_session=True,
                preexec_fn=_claim_controlling_tty,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnError(f"Could not start {program!r}: {e}") from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        # Make reads non-blocking
        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        logger.info(
            "Spawned pid=%d in %dx%d PTY: %s",
            proc.pid,
            cols,
            rows,
            " ".join([program, *args]),
        )
        return cls(proc, master_fd, cols, rows, kill_grace=kill_grace)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def alive(self) -> bool:
        return self._proc.returncode is None

    @property
    def size(self) -> tuple[int, int]:
        """Current terminal size as (cols, rows)."""
        return self.cols, self.rows

    @property
    def kill_requested(self) -> bool:
        return self._kill_requested

    # ── input ─────────────────────────────────────────────────────────

    def write(self, data: bytes) -> None:
        """Send input to the child.

        Input arriving after the child has exited is dropped: a keystroke
        racing the exit notification is expected.
        """
        if not data:
            return
        if self._master_fd is None or not self.alive:
            logger.debug("Dropping %d bytes written after exit (pid=%d)", len(data), self.pid)
            return
        self._write_buffer += data
        if not self._writing:
            self._flush_writes()

    def _flush_writes(self) -> None:
        while self._write_buffer and self._master_fd is not None:
            try:
                sent = os.write(self._master_fd, self._write_buffer)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug("Write to pid=%d failed: %s", self.pid, e)
                self._write_buffer.clear()
                break
            del self._write_buffer[:sent]

        if self._write_buffer and self._master_fd is not None:
            if not self._writing:
                self._loop.add_writer(self._master_fd, self._flush_writes)
                self._writing = True
        elif self._writing:
            self._stop_writing()

        if len(self._write_buffer) <= WRITE_LOW_WATER:
            self._write_ready.set()

    @property
    def write_buffer_size(self) -> int:
        return len(self._write_buffer)

    @property
    def write_blocked(self) -> bool:
        """True while more input is buffered than the child is keeping up with."""
        return len(self._write_buffer) > WRITE_HIGH_WATER and self._master_fd is not None

    async def drain(self) -> None:
        """Wait until the child has consumed enough of the pending input.

        Returns at once while no more than WRITE_HIGH_WATER bytes are
        buffered, and when the PTY has been closed.
        """
        while self.write_blocked:
            self._write_ready.clear()
            await self._write_ready.wait()

    def _stop_writing(self) -> None:
        if self._writing and self._master_fd is not None:
            self._loop.remove_writer(self._master_fd)
        self._writing = False

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY window.

        Raises ValueError for non-positive or non-integer dimensions. Hosts
        that refuse the window-size ioctl are logged and otherwise ignored.
        """
        cols = _check_dimension("columns", cols)
        rows = _check_dimension("rows", rows)
        self.cols, self.rows = cols, rows

        if self._master_fd is None:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.warning("Could not resize PTY of pid=%d: %s", self.pid, e)
            return
        # Notify child of resize
        if self.alive:
            try:
                os.kill(self.pid, signal.SIGWINCH)
            except ProcessLookupError:
                pass

    # ── termination ───────────────────────────────────────────────────

    def kill(self) -> None:
        """Ask the child to terminate.

        Sends SIGHUP to the child's process group, the way a terminal
        hangup would, and SIGKILL if it is still running after kill_grace
        seconds. Calling kill() again, or after exit, does nothing.
        """
        if self._kill_requested or not self.alive:
            return
        self._kill_requested = True
        logger.info("Killing pid=%d", self.pid)
        self._signal_group(signal.SIGHUP)
        self._kill_timer = self._loop.call_later(self.kill_grace, self._force_kill)

    def _force_kill(self) -> None:
        self._kill_timer = None
        if self.alive:
            logger.warning(
                "pid=%d still running %.1fs after hangup, sending SIGKILL",
                self.pid,
                self.kill_grace,
            )
            self._signal_group(signal.SIGKILL)

    def _signal_group(self, sig: signal.Signals) -> None:
        # start_new_session makes the child its own process group leader.
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self.pid)
        except PermissionError as e:
            logger.warning("Could not signal pid=%d: %s", self.pid, e)

    async def wait(self) -> int | None:
        """Wait until the child has exited and been reaped."""
        await asyncio.shield(self._reaper)
        return self.returncode

    # ── output ────────────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[ProcessEvent]:
        """Yield output chunks, then exactly one ProcessExit."""
        while True:
            event = await self._queue.get()
            if not self._reading and self._queue.qsize() <= LOW_WATER:
                self._start_reading()
            yield event
            if isinstance(event, ProcessExit):
                return

    def _start_reading(self) -> None:
        if self._reading or self._eof or self._master_fd is None or not self.alive:
            return
        self._loop.add_reader(self._master_fd, self._on_readable)
        self._reading = True

    def _stop_reading(self) -> None:
        if self._reading and self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    def _read_chunk(self) -> bytes | None:
        """One non-blocking read. None means nothing available right now."""
        try:
            return os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return None
        except OSError:
            # EIO once every slave fd is closed
            return b""

    def _on_readable(self) -> None:
        data = self._read_chunk()
        if data is None:
            return
        if not data:
            self._eof = True
            self._stop_reading()
            return
        self._queue.put_nowait(ProcessOutput(data))
        if self._queue.qsize() >= HIGH_WATER:
            self._stop_reading()

    def _drain(self) -> None:
        """Collect output the child wrote just before exiting."""
        self._stop_reading()
        for _ in range(_MAX_DRAIN_READS):
            if self._eof or self._master_fd is None:
                break
            data = self._read_chunk()
            if not data:
                break
            self._queue.put_nowait(ProcessOutput(data))

    async def _reap(self) -> None:
        try:
            status = await self._proc.wait()
        finally:
            if self._kill_timer is not None:
                self._kill_timer.cancel()
                self._kill_timer = None
            self._drain()
            self._close_fd()
        logger.info("pid=%d exited (status=%s)", self.pid, status)
        self._queue.put_nowait(ProcessExit(status))

    def _close_fd(self) -> None:
        self._stop_reading()
        self._stop_writing()
        self._write_buffer.clear()
        self._write_ready.set()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
