"""Wire protocol for termbridge WebSocket communication.

Message types (JSON text frames):
  - init:        client -> server  {"type":"init","mode":"primary"|"restricted","caught":<json>}
                 (first message only)
  - resize:      client -> server  {"type":"resize","cols":N,"rows":N}
  - sync:        server -> client  {"type":"sync","caught":<json>}
  - app-exited:  server -> client  {"type":"app-exited"}
  - error:       server -> client  {"type":"error","message":"..."}

Binary frames:
  - Terminal output from the server is sent as raw binary frames. Anything
    the client sends that is not a resize message, text or binary, is
    written to the terminal verbatim as keystrokes.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from termbridge.modes import Mode


class MsgType(str, Enum):
    INIT = "init"
    RESIZE = "resize"
    SYNC = "sync"
    APP_EXITED = "app-exited"
    ERROR = "error"


@dataclass(frozen=True)
class Handshake:
    mode: Mode = Mode.PRIMARY
    initial_state: Any = field(default_factory=list)

    @classmethod
    def default(cls) -> "Handshake":
        return cls()


@dataclass(frozen=True)
class ResizeFrame:
    cols: Any
    rows: Any


def encode_control(msg_type: MsgType, **kwargs: Any) -> str:
    """Encode a control message as JSON."""
    return json.dumps({"type": msg_type.value, **kwargs})


def decode_control(raw: str | bytes) -> dict[str, Any]:
    """Decode a JSON control message.

    Raises ValueError for anything that is not a JSON object with a type,
    including JSON nested too deeply to decode.
    """
    try:
        data = json.loads(raw)
    except RecursionError:
        raise ValueError("Control message nested too deeply") from None
    if not isinstance(data, dict):
        raise ValueError("Control message must be a JSON object")
    if "type" not in data:
        raise ValueError("Missing 'type' field in control message")
    return data


def parse_handshake(raw: str | bytes) -> Handshake | None:
    """Interpret the first message of a connection.

    Returns None when the message is not an init message; the caller then
    falls back to Handshake.default().
    """
    try:
        msg = decode_control(raw)
    except ValueError:
        return None
    if msg["type"] != MsgType.INIT.value:
        return None
    caught = msg.get("caught")
    if caught is None:
        caught = []
    return Handshake(mode=Mode.parse(msg.get("mode")), initial_state=caught)


def parse_control(raw: str | bytes) -> ResizeFrame | None:
    """Classify an inbound message.

    Returns a ResizeFrame for resize messages and None for everything else,
    which is literal terminal input even when it happens to be JSON.
    """
    try:
        msg = decode_control(raw)
    except ValueError:
        return None
    if msg["type"] != MsgType.RESIZE.value:
        return None
    return ResizeFrame(cols=msg.get("cols"), rows=msg.get("rows"))


def as_bytes(message: str | bytes) -> bytes:
    if isinstance(message, str):
        return message.encode("utf-8")
    return bytes(message)


def init_msg(mode: Mode | str, caught: Any = None) -> str:
    return encode_control(
        MsgType.INIT,
        mode=Mode.parse(mode).value,
        caught=[] if caught is None else caught,
    )


def resize_msg(cols: int, rows: int) -> str:
    return encode_control(MsgType.RESIZE, cols=cols, rows=rows)


def sync_msg(caught: Any) -> str:
    return encode_control(MsgType.SYNC, caught=caught)


def app_exited_msg() -> str:
    return encode_control(MsgType.APP_EXITED)


def error_msg(message: str) -> str:
    return encode_control(MsgType.ERROR, message=message)
