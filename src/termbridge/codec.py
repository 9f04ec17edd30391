"""Side-channel markers embedded in terminal output.

A cooperating child program reports structured state by writing

    ESC ] 9999 ; <json> BEL

to its own stdout. Terminals ignore the unknown OSC sequence; the bridge
removes it from the byte stream and forwards the decoded JSON separately.
"""

import json
import logging
from typing import Any

logger = logging.getLogger("termbridge.codec")

MARKER_PREFIX = b"\x1b]9999;"
MARKER_TERMINATOR = b"\x07"

# Longest unterminated marker the scanner will hold back before giving up
# and releasing the bytes as ordinary output.
DEFAULT_MAX_PENDING = 64 * 1024


def encode_marker(value: Any) -> bytes:
    """Encode a JSON value as a side-channel marker."""
    payload = json.dumps(value, separators=(",", ":"))
    return MARKER_PREFIX + payload.encode("utf-8") + MARKER_TERMINATOR


def _decode_payload(raw: bytes) -> Any:
    # UnicodeDecodeError and JSONDecodeError are both ValueErrors.
    try:
        return json.loads(raw.decode("utf-8"))
    except RecursionError:
        raise ValueError("Marker payload nested too deeply") from None


def _partial_prefix_len(data: bytes) -> int:
    """Length of the longest suffix of data that starts a marker prefix."""
    for size in range(min(len(data), len(MARKER_PREFIX) - 1), 0, -1):
        if data.endswith(MARKER_PREFIX[:size]):
            return size
    return 0


def _scan(buf: bytes) -> tuple[bytes, list[Any], bytes]:
    """Single left-to-right pass over buf.

    Returns (residue, payloads, held) where held is a trailing incomplete
    marker, or a trailing fragment of the marker prefix, that a later chunk
    might complete.
    """
    residue = bytearray()
    payloads: list[Any] = []
    pos = 0

    while True:
        start = buf.find(MARKER_PREFIX, pos)
        if start < 0:
            break
        end = buf.find(MARKER_TERMINATOR, start + len(MARKER_PREFIX))
        if end < 0:
            residue += buf[pos:start]
            return bytes(residue), payloads, buf[start:]

        residue += buf[pos:start]
        raw = buf[start + len(MARKER_PREFIX):end]
        try:
            payloads.append(_decode_payload(raw))
        except ValueError:
            logger.debug("Dropping marker with malformed payload (%d bytes)", len(raw))
        pos = end + len(MARKER_TERMINATOR)

    tail = buf[pos:]
    keep = _partial_prefix_len(tail)
    if keep:
        residue += tail[:-keep]
        return bytes(residue), payloads, tail[-keep:]
    residue += tail
    return bytes(residue), payloads, b""


def extract_markers(chunk: bytes) -> tuple[bytes, list[Any]]:
    """Strip every complete marker from chunk.

    Returns the remaining bytes and the decoded payloads in stream order.
    Markers whose payload is not valid UTF-8 JSON are removed without
    producing a payload. No state is kept between calls: an incomplete
    marker at the end of the chunk stays in the residue.
    """
    residue, payloads, held = _scan(chunk)
    return residue + held, payloads


class MarkerScanner:
    """Incremental marker extraction across arbitrarily split chunks.

    A PTY delivers output in whatever fragments the kernel flushes, so a
    marker may straddle two reads. The scanner keeps the unfinished part
    back until the next feed() completes it.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING):
        self.max_pending = max_pending
        self._pending = b""

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, chunk: bytes) -> tuple[bytes, list[Any]]:
        residue, payloads, held = _scan(self._pending + chunk)
        if len(held) > self.max_pending:
            logger.debug(
                "Releasing %d bytes of unterminated marker as output", len(held)
            )
            residue += held
            held = b""
        self._pending = held
        return residue, payloads

    def flush(self) -> bytes:
        """Release any held bytes as plain output."""
        held, self._pending = self._pending, b""
        return held

    def release_prefix(self) -> bytes:
        """Release held bytes that are only the start of a marker prefix.

        Held bytes that already carry the full prefix stay put.
        """
        if not self._pending or self._pending.startswith(MARKER_PREFIX):
            return b""
        return self.flush()
