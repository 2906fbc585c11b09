"""Duplex text-frame channels: WebSocket connections and an in-process loopback."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional, Protocol, Tuple

from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

from .errors import SessionClosedError

__all__ = [
    "Channel",
    "CloseCode",
    "LoopbackChannel",
    "WebSocketChannel",
    "connect_channel",
]

LOGGER = logging.getLogger(__name__)


class CloseCode(IntEnum):
    """WebSocket close codes used by the session layer."""

    NORMAL = 1000
    GOING_AWAY = 1001
    ABNORMAL = 1006
    INTERNAL_ERROR = 1011


class Channel(Protocol):
    """One duplex connection carrying one JSON document per text frame."""

    def send(self, text: str) -> None: ...

    def receive(self) -> str: ...

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None: ...


class WebSocketChannel:
    """Adapts a ``websockets`` sync connection (client or server side)."""

    def __init__(self, connection: Any) -> None:
        self._connection = connection

    @property
    def path(self) -> str:
        """Return the request path for server-side connections."""
        request = getattr(self._connection, "request", None)
        return getattr(request, "path", "") or ""

    def send(self, text: str) -> None:
        try:
            self._connection.send(text)
        except ConnectionClosed as error:
            raise _closed_error(error) from error

    def receive(self) -> str:
        try:
            frame = self._connection.recv()
        except ConnectionClosed as error:
            raise _closed_error(error) from error
        if isinstance(frame, bytes):
            return frame.decode("utf-8", errors="replace")
        return frame

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        self._connection.close(code=int(code), reason=reason)


def connect_channel(url: str, *, open_timeout: float = 10.0) -> WebSocketChannel:
    """Open a client WebSocket connection to ``url``."""
    LOGGER.debug("Connecting to %s", url)
    return WebSocketChannel(connect(url, open_timeout=open_timeout, max_size=None))


def _closed_error(error: ConnectionClosed) -> SessionClosedError:
    received = error.rcvd
    if received is None:
        return SessionClosedError(int(CloseCode.ABNORMAL), "connection lost")
    return SessionClosedError(received.code, received.reason)


@dataclass(frozen=True, slots=True)
class _CloseFrame:
    code: int
    reason: str


class LoopbackChannel:
    """In-memory channel end; frames sent on one end are received on its peer."""

    def __init__(self, inbox: "queue.Queue[Any]", outbox: "queue.Queue[Any]") -> None:
        self._inbox = inbox
        self._outbox = outbox
        self._lock = threading.Lock()
        self._closed: Optional[_CloseFrame] = None

    @classmethod
    def pair(cls) -> Tuple["LoopbackChannel", "LoopbackChannel"]:
        """Return two connected channel ends."""
        left: "queue.Queue[Any]" = queue.Queue()
        right: "queue.Queue[Any]" = queue.Queue()
        return cls(left, right), cls(right, left)

    def send(self, text: str) -> None:
        with self._lock:
            if self._closed is not None:
                raise SessionClosedError(self._closed.code, self._closed.reason)
        self._outbox.put(text)

    def receive(self) -> str:
        with self._lock:
            if self._closed is not None:
                raise SessionClosedError(self._closed.code, self._closed.reason)
        item = self._inbox.get()
        if isinstance(item, _CloseFrame):
            with self._lock:
                self._closed = item
            self._outbox.put(item)
            raise SessionClosedError(item.code, item.reason)
        return item

    def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        frame = _CloseFrame(int(code), reason)
        with self._lock:
            if self._closed is not None:
                return
            self._closed = frame
        self._outbox.put(frame)
