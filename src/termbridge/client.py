"""WebSocket client — an interactive terminal front end for a termbridge server."""

import asyncio
import os
import signal
import ssl
import sys
import termios
import tty
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import websockets

from termbridge import protocol
from termbridge.modes import Mode
from termbridge.tls import create_client_ssl_context, peer_fingerprint_matches

DISCONNECT_KEY = b"\x1d"  # Ctrl+]


@dataclass
class ClientState:
    """What the client remembers across connections."""

    mode: Mode = Mode.PRIMARY
    caught: Any = field(default_factory=list)
    app_exited: bool = False
    errors: list[str] = field(default_factory=list)

    def handle_control(self, msg: dict[str, Any]) -> None:
        msg_type = msg.get("type")
        if msg_type == protocol.MsgType.SYNC.value:
            self.caught = msg.get("caught")
        elif msg_type == protocol.MsgType.APP_EXITED.value:
            self.app_exited = True
        elif msg_type == protocol.MsgType.ERROR.value:
            self.errors.append(str(msg.get("message", "")))

    def next_mode(self) -> Mode | None:
        """Mode for the follow-up connection, or None to stop.

        When the primary program exits the client drops into the restricted
        shell, the way the browser page does.
        """
        if self.app_exited and self.mode is Mode.PRIMARY:
            return Mode.RESTRICTED
        return None


def build_uri(host: str, port: int, path: str = "/terminal", use_tls: bool = False) -> str:
    scheme = "wss" if use_tls else "ws"
    if not path.startswith("/"):
        path = "/" + path
    return f"{scheme}://{host}:{port}{path}"


async def connect(
    host: str,
    port: int,
    mode: Mode = Mode.PRIMARY,
    caught: Any = None,
    path: str = "/terminal",
    use_tls: bool = False,
    fingerprint: str | None = None,
    ca_cert: Path | None = None,
) -> ClientState:
    """Connect to a termbridge server and provide interactive terminal access."""
    uri = build_uri(host, port, path, use_tls)
    ssl_ctx = create_client_ssl_context(ca_cert_path=ca_cert) if use_tls else None
    state = ClientState(mode=Mode.parse(mode), caught=[] if caught is None else caught)

    while True:
        print(f"Connecting to {uri} ({state.mode.value})...")
        try:
            async with websockets.connect(
                uri,
                ssl=ssl_ctx,
                max_size=1_048_576,
                ping_interval=30,
                ping_timeout=10,
            ) as ws:
                if use_tls and fingerprint:
                    ssl_object = ws.transport.get_extra_info("ssl_object")
                    if not peer_fingerprint_matches(ssl_object, fingerprint):
                        print(
                            f"\nCERTIFICATE MISMATCH!\n"
                            f"  Expected: {fingerprint}\n"
                            f"Connection refused.",
                            file=sys.stderr,
                        )
                        return state

                await ws.send(protocol.init_msg(state.mode, state.caught))
                print("Connected. Press Ctrl+] to disconnect.\n")
                disconnected = await _run_terminal(ws, state)

        except ConnectionRefusedError:
            print(f"Connection refused: {uri}", file=sys.stderr)
            return state
        except ssl.SSLError as e:
            print(f"TLS error: {e}", file=sys.stderr)
            return state
        except OSError as e:
            print(f"Connection error: {e}", file=sys.stderr)
            return state

        for error in state.errors:
            print(f"Server error: {error}", file=sys.stderr)
        state.errors.clear()

        next_mode = None if disconnected else state.next_mode()
        if next_mode is None:
            return state
        print(f"\n[{state.mode.value} program exited, switching to {next_mode.value}]")
        state.mode = next_mode
        state.app_exited = False


async def _run_terminal(ws: websockets.ClientConnection, state: ClientState) -> bool:
    """Run the interactive terminal session.

    Sets terminal to raw mode and forwards I/O between local stdin/stdout
    and the WebSocket connection. Returns True if the user disconnected.
    """
    stdin_fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(stdin_fd)

    cols, rows = _get_terminal_size()
    await ws.send(protocol.resize_msg(cols, rows))

    loop = asyncio.get_running_loop()
    resize_event = asyncio.Event()
    loop.add_signal_handler(signal.SIGWINCH, resize_event.set)

    try:
        tty.setraw(stdin_fd)

        reader_task = asyncio.create_task(_ws_reader(ws, state))
        writer_task = asyncio.create_task(_stdin_writer(ws, stdin_fd))
        resize_task = asyncio.create_task(_resize_handler(ws, resize_event))

        done, pending = await asyncio.wait(
            [reader_task, writer_task, resize_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        return writer_task in done and writer_task.result()
    finally:
        termios.tcsetattr(stdin_fd, termios.TCSAFLUSH, old_settings)
        loop.remove_signal_handler(signal.SIGWINCH)


async def _ws_reader(ws: websockets.ClientConnection, state: ClientState) -> None:
    """Read from WebSocket: terminal bytes to stdout, control messages to state."""
    try:
        async for message in ws:
            if isinstance(message, bytes):
                sys.stdout.buffer.write(message)
                sys.stdout.buffer.flush()
                continue
            try:
                state.handle_control(protocol.decode_control(message))
            except ValueError:
                sys.stdout.write(message)
                sys.stdout.flush()
    except websockets.ConnectionClosed:
        pass


async def _stdin_writer(ws: websockets.ClientConnection, stdin_fd: int) -> bool:
    """Read from stdin and write to WebSocket.

    Returns True when the user ended the session (Ctrl+] or end of input).
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[bytes | None] = asyncio.Queue()

    def _on_stdin_readable() -> None:
        try:
            data = os.read(stdin_fd, 4096)
        except OSError:
            data = b""
        queue.put_nowait(data or None)

    loop.add_reader(stdin_fd, _on_stdin_readable)

    try:
        while True:
            data = await queue.get()
            if data is None or DISCONNECT_KEY in data:
                return True
            await ws.send(data)
    except websockets.ConnectionClosed:
        return False
    finally:
        loop.remove_reader(stdin_fd)


async def _resize_handler(
    ws: websockets.ClientConnection, resize_event: asyncio.Event
) -> None:
    """Watch for terminal resize events and send them to the server."""
    try:
        while True:
            await resize_event.wait()
            resize_event.clear()
            cols, rows = _get_terminal_size()
            await ws.send(protocol.resize_msg(cols, rows))
    except websockets.ConnectionClosed:
        pass


def _get_terminal_size() -> tuple[int, int]:
    """Get terminal size as (cols, rows)."""
    try:
        size = os.get_terminal_size()
        return size.columns, size.lines
    except OSError:
        return 80, 24
