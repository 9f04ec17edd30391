"""Bridge session — relays one WebSocket connection to one PTY process."""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets

from termbridge import protocol
from termbridge.codec import DEFAULT_MAX_PENDING, MarkerScanner
from termbridge.modes import Mode, ModeRegistry
from termbridge.process import ProcessOutput, PtyProcess, SpawnError

logger = logging.getLogger("termbridge.session")

Spawner = Callable[..., Awaitable[PtyProcess]]

# Seconds of quiet output after which a trailing fragment of the marker
# prefix (a lone ESC, say) is sent on as ordinary output.
PREFIX_RELEASE_DELAY = 0.05


class SessionState(str, Enum):
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionSettings:
    cols: int = 120
    rows: int = 40
    term_name: str = "xterm-256color"
    kill_grace: float = 2.0
    max_pending: int = DEFAULT_MAX_PENDING

    @classmethod
    def from_config(cls, sc: Any) -> "SessionSettings":
        return cls(
            cols=sc.cols,
            rows=sc.rows,
            term_name=sc.term_name,
            kill_grace=sc.kill_grace,
        )


class BridgeSession:
    """The stateful bridge for a single connection.

    Lifecycle: handshaking -> active -> closing -> closed. Whichever side
    goes first (child exit or channel close) moves the session to closing
    and tears down the other side. Every state change happens in plain
    synchronous code on the event loop, so the input and output pumps never
    interleave inside a transition.
    """

    def __init__(
        self,
        channel: Any,
        registry: ModeRegistry,
        settings: SessionSettings | None = None,
        spawner: Spawner | None = None,
        name: str = "session",
    ):
        self.channel = channel
        self.registry = registry
        self.settings = settings or SessionSettings()
        self.name = name
        self.state = SessionState.HANDSHAKING
        self.mode: Mode | None = None
        self.process: PtyProcess | None = None

        self._spawner = spawner or PtyProcess.spawn
        self._scanner = MarkerScanner(self.settings.max_pending)
        self._channel_open = True
        self._kill_sent = False
        self._prefix_timer: asyncio.TimerHandle | None = None
        self._prefix_send: asyncio.Future | None = None

    async def run(
        self,
        handshake: protocol.Handshake,
        pending: str | bytes | None = None,
    ) -> None:
        """Spawn the child for handshake and relay until both sides are done.

        pending is a first message that turned out not to be a handshake; it
        is handled as ordinary input once the child is running.
        """
        if self.state is not SessionState.HANDSHAKING:
            self.state = SessionState.CLOSED
            return

        mode, spec = self.registry.resolve(handshake.mode)
        self.mode = mode
        env = self.registry.launch_env(mode, handshake.initial_state)

        try:
            self.process = await self._spawner(
                spec.program,
                spec.args,
                cols=self.settings.cols,
                rows=self.settings.rows,
                env=env,
                cwd=spec.cwd,
                term_name=self.settings.term_name,
                kill_grace=self.settings.kill_grace,
            )
        except SpawnError as e:
            logger.error("[%s] Spawn failed: %s", self.name, e)
            self.state = SessionState.CLOSING
            await self._send(protocol.error_msg(str(e)))
            await self._close_channel(1011, "spawn failed")
            self.state = SessionState.CLOSED
            return

        if self.state is not SessionState.HANDSHAKING:
            # terminate() arrived while spawning
            self._kill_once()
            await self.process.wait()
            self.state = SessionState.CLOSED
            return

        self.state = SessionState.ACTIVE
        logger.info("[%s] Session active (mode=%s, pid=%d)", self.name, mode.value, self.process.pid)

        if pending is not None:
            self._on_message(pending)

        pumps = [
            asyncio.create_task(self._pump_output()),
            asyncio.create_task(self._pump_input()),
        ]
        try:
            await asyncio.gather(*pumps)
        finally:
            for pump in pumps:
                pump.cancel()
            self._cancel_prefix_release()
            if self.process.alive:
                self._kill_once()
            self.state = SessionState.CLOSED
            logger.info("[%s] Session closed", self.name)

    async def terminate(self, reason: str = "server shutting down") -> None:
        """Close the session from outside, killing the child."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING
        self._kill_once()
        await self._close_channel(1001, reason)

    # ── child -> remote ───────────────────────────────────────────────

    async def _pump_output(self) -> None:
        async for event in self.process.events():
            if isinstance(event, ProcessOutput):
                await self._on_output(event.data)
            else:
                await self._on_exit(event.status)

    async def _on_output(self, data: bytes) -> None:
        await self._finish_prefix_release()
        if self.mode is Mode.PRIMARY:
            residue, payloads = self._scanner.feed(data)
        else:
            # The restricted program never speaks the side channel.
            residue, payloads = data, []

        if residue:
            await self._send(residue)
        for payload in payloads:
            await self._send(protocol.sync_msg(payload))
        if self._scanner.pending:
            self._prefix_timer = asyncio.get_running_loop().call_later(
                PREFIX_RELEASE_DELAY, self._release_prefix
            )

    async def _on_exit(self, status: int | None) -> None:
        logger.info("[%s] Child exited (status=%s)", self.name, status)
        if self.state is not SessionState.ACTIVE:
            return
        self.state = SessionState.CLOSING

        await self._finish_prefix_release()
        if self.mode is Mode.PRIMARY:
            tail = self._scanner.flush()
            if tail:
                await self._send(tail)
            await self._send(protocol.app_exited_msg())
        await self._close_channel()

    def _release_prefix(self) -> None:
        self._prefix_timer = None
        held = self._scanner.release_prefix()
        if held:
            self._prefix_send = asyncio.ensure_future(self._send(held))

    def _cancel_prefix_release(self) -> None:
        if self._prefix_timer is not None:
            self._prefix_timer.cancel()
            self._prefix_timer = None

    async def _finish_prefix_release(self) -> None:
        # Held bytes already on their way must go out before anything newer.
        self._cancel_prefix_release()
        if self._prefix_send is not None:
            send, self._prefix_send = self._prefix_send, None
            await send

    # ── remote -> child ───────────────────────────────────────────────

    async def _pump_input(self) -> None:
        try:
            async for message in self.channel:
                self._on_message(message)
                await self._drain_input()
        except websockets.ConnectionClosed:
            pass
        self._channel_open = False
        self._on_remote_closed()

    async def _drain_input(self) -> None:
        """Stop reading the channel while the child is behind on input."""
        if self.process is None or not self.process.write_blocked:
            return
        drained = asyncio.ensure_future(self.process.drain())
        closed = asyncio.ensure_future(self.channel.wait_closed())
        try:
            await asyncio.wait({drained, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()
            closed.cancel()

    def _on_message(self, message: str | bytes) -> None:
        if self.state is not SessionState.ACTIVE:
            logger.debug("[%s] Discarding message in state %s", self.name, self.state.value)
            return

        frame = protocol.parse_control(message)
        if frame is not None:
            try:
                self.process.resize(frame.cols, frame.rows)
            except ValueError as e:
                logger.warning("[%s] Ignoring resize: %s", self.name, e)
            return

        self.process.write(protocol.as_bytes(message))

    def _on_remote_closed(self) -> None:
        if self.state is not SessionState.ACTIVE:
            return
        logger.info("[%s] Client disconnected", self.name)
        self.state = SessionState.CLOSING
        self._kill_once()

    # ── helpers ───────────────────────────────────────────────────────

    def _kill_once(self) -> None:
        if self.process is None or self._kill_sent:
            return
        self._kill_sent = True
        self.process.kill()

    async def _send(self, message: str | bytes) -> None:
        if not self._channel_open:
            return
        try:
            await self.channel.send(message)
        except websockets.ConnectionClosed:
            self._channel_open = False

    async def _close_channel(self, code: int = 1000, reason: str = "") -> None:
        if not self._channel_open:
            return
        self._channel_open = False
        await self.channel.close(code, reason)
