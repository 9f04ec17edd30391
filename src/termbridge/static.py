"""Plain HTTP responses for the browser client served next to the socket."""

import asyncio
import logging
import mimetypes
from http import HTTPStatus
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import unquote, urlsplit

from websockets.asyncio.server import ServerConnection
from websockets.datastructures import Headers
from websockets.http11 import Request, Response

logger = logging.getLogger("termbridge.static")

ProcessRequest = Callable[[ServerConnection, Request], Awaitable[Response | None]]


def resolve_static_path(root: Path, request_path: str) -> Path | None:
    """Map a request path onto a file under root.

    Directories resolve to their index.html. Returns None when nothing
    matches or the path would leave root.
    """
    relative = unquote(urlsplit(request_path).path).lstrip("/")
    root = root.resolve()
    try:
        candidate = (root / relative).resolve()
    except (OSError, ValueError) as e:
        # embedded NUL bytes, symlink loops
        logger.warning("Rejected static path %r: %s", request_path, e)
        return None
    if candidate != root and root not in candidate.parents:
        logger.warning("Rejected path outside static root: %s", request_path)
        return None
    if candidate.is_dir():
        candidate = candidate / "index.html"
    if not candidate.is_file():
        return None
    return candidate


def file_response(path: Path) -> Response:
    body = path.read_bytes()
    content_type = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
    headers = Headers([
        ("Content-Type", content_type),
        ("Content-Length", str(len(body))),
        ("Connection", "close"),
    ])
    return Response(HTTPStatus.OK.value, HTTPStatus.OK.phrase, headers, body)


def make_process_request(ws_path: str, static_root: Path | None) -> ProcessRequest:
    """Build a websockets process_request hook.

    Requests for ws_path continue to the WebSocket handshake; everything
    else is answered from static_root, or with 404.
    """

    async def process_request(connection: ServerConnection, request: Request) -> Response | None:
        if urlsplit(request.path).path == ws_path:
            return None
        if static_root is not None:
            target = resolve_static_path(static_root, request.path)
            if target is not None:
                return await asyncio.to_thread(file_response, target)
        return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

    return process_request
