"""WebSocket server — accepts connections and bridges them to PTY sessions."""

import asyncio
import logging
import signal
from pathlib import Path

import websockets
from websockets.asyncio.server import ServerConnection

from termbridge import protocol
from termbridge.config import Config
from termbridge.modes import ModeRegistry
from termbridge.session import BridgeSession, SessionSettings, Spawner
from termbridge.static import make_process_request
from termbridge.tls import create_server_ssl_context

logger = logging.getLogger("termbridge.server")


def _remote_name(ws: ServerConnection) -> str:
    remote = ws.request.headers.get(
        "X-Forwarded-For",
        ws.remote_address[0] if ws.remote_address else "unknown",
    )
    return str(remote).split(",")[0].strip()


class BridgeServer:
    """Accepts WebSocket connections and runs one BridgeSession per client.

    The registry of live sessions exists only so that shutdown can
    terminate them all; sessions share nothing else.
    """

    def __init__(
        self,
        config: Config,
        config_dir: Path | None = None,
        registry: ModeRegistry | None = None,
        spawner: Spawner | None = None,
    ):
        self.config = config
        self.sc = config.server
        self.config_dir = config_dir or Config.config_dir()
        self.registry = registry or ModeRegistry.from_config(self.sc)
        self.settings = SessionSettings.from_config(self.sc)
        self.port: int | None = None
        self.ready = asyncio.Event()
        self._spawner = spawner
        self._sessions: set[BridgeSession] = set()
        self._stop = asyncio.Event()

    @property
    def sessions(self) -> frozenset[BridgeSession]:
        return frozenset(self._sessions)

    async def _read_handshake(
        self, ws: ServerConnection, remote: str
    ) -> tuple[protocol.Handshake, str | bytes | None] | None:
        """Wait for the first message.

        Returns the handshake plus any first message that has to be replayed
        as input, or None if the client left before saying anything.
        """
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.sc.handshake_timeout)
        except asyncio.TimeoutError:
            logger.info("No handshake from %s, using defaults", remote)
            return protocol.Handshake.default(), None
        except websockets.ConnectionClosed:
            return None

        handshake = protocol.parse_handshake(raw)
        if handshake is None:
            logger.info("First message from %s is not a handshake, using defaults", remote)
            return protocol.Handshake.default(), raw
        return handshake, None

    async def _handle_connection(self, ws: ServerConnection) -> None:
        """Run the session for a single WebSocket connection."""
        remote = _remote_name(ws)
        logger.info("Connection from %s", remote)

        if self.sc.max_sessions and len(self._sessions) >= self.sc.max_sessions:
            await ws.send(protocol.error_msg("Maximum sessions reached. Try again later."))
            await ws.close(1013, "too many sessions")
            return

        session = BridgeSession(
            ws,
            self.registry,
            self.settings,
            spawner=self._spawner,
            name=remote,
        )
        self._sessions.add(session)
        try:
            result = await self._read_handshake(ws, remote)
            if result is None:
                logger.info("Client %s disconnected before handshake", remote)
                return
            handshake, pending = result
            await session.run(handshake, pending)
        except Exception:
            logger.exception("Session for %s failed", remote)
            await session.terminate("internal error")
        finally:
            self._sessions.discard(session)
            logger.info("Session ended for %s", remote)

    async def shutdown(self) -> None:
        """Terminate every live session."""
        sessions = list(self._sessions)
        if sessions:
            logger.info("Terminating %d session(s)", len(sessions))
        await asyncio.gather(
            *(s.terminate() for s in sessions), return_exceptions=True
        )

    def stop(self) -> None:
        self._stop.set()

    async def serve(self, install_signal_handlers: bool = False) -> None:
        """Start the WebSocket server and run until stop() is called."""
        ssl_ctx = None
        if self.sc.tls:
            cert_path = Config.cert_path(self.config_dir)
            key_path = Config.key_path(self.config_dir)
            if not cert_path.exists() or not key_path.exists():
                raise FileNotFoundError(
                    "TLS certificate not found. Run 'termbridge init --tls' first."
                )
            ssl_ctx = create_server_ssl_context(cert_path, key_path)

        static_root = Path(self.sc.static_dir) if self.sc.static_dir else None

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self.stop)

        logger.info(
            "Starting termbridge on %s:%d%s (%s)",
            self.sc.host,
            self.sc.port,
            self.sc.path,
            "TLS" if ssl_ctx else "plain",
        )
        for mode in self.registry:
            spec = self.registry[mode]
            logger.info("Mode %s: %s", mode.value, " ".join([spec.program, *spec.args]))
        if static_root is not None:
            logger.info("Serving static files from %s", static_root)

        async with websockets.serve(
            self._handle_connection,
            self.sc.host,
            self.sc.port,
            ssl=ssl_ctx,
            process_request=make_process_request(self.sc.path, static_root),
            max_size=self.sc.max_message_size,
            ping_interval=30,
            ping_timeout=10,
        ) as server:
            self.port = next(iter(server.sockets)).getsockname()[1]
            self.ready.set()
            logger.info("Server is ready on port %d. Waiting for connections...", self.port)
            try:
                await self._stop.wait()
            finally:
                await self.shutdown()
