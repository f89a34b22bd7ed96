"""Client side of the realtime sync channel.

:class:`SyncClient` keeps one logical connection per signed-in user, says
``hello`` after every (re)connect, answers heartbeat pings, drops its own
echoed updates and hands every other ``update`` to the registered
subscribers.  Unexpected closes are retried after a fixed delay until
:meth:`SyncClient.disconnect` is called.
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4

import websockets
from websockets.exceptions import WebSocketException

from .exceptions import MalformedMessageError
from .models import SYNC_PATH, Heartbeat, Hello, MessageType, Scope, SyncMessage, SyncUpdate, decode_message, encode_message, make_update
from .ops import StructuredLogger

DEFAULT_RECONNECT_SECONDS = 3.0

_TRANSPORT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class ClientSocket(Protocol):
    """What the client needs from an open socket (``websockets`` connections fit)."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[ClientSocket]]
Subscriber = Callable[[SyncUpdate], None]


class SyncState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def build_sync_url(origin: str, *, path: str = SYNC_PATH) -> str:
    """Map the page origin (``http[s]://host``) to the sync socket URL."""

    parts = urlsplit(origin)
    scheme = "wss" if parts.scheme in ("https", "wss") else "ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


class SyncClient:
    """Maintain the sync socket and fan inbound updates out to subscribers."""

    def __init__(
        self,
        url: str,
        *,
        connector: Connector | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_SECONDS,
        client_id: str | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.url = url
        self.client_id = client_id or f"client-{uuid4().hex}"
        self.reconnect_delay = reconnect_delay
        self._connector: Connector = connector or websockets.connect
        self._logger = logger or StructuredLogger()
        self._subscribers: List[Subscriber] = []
        self._state = SyncState.IDLE
        self._user_id: Optional[str] = None
        self._should_reconnect = True
        self._socket: Optional[ClientSocket] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._opened = asyncio.Event()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber`` for inbound updates; returns an unsubscribe callable."""

        self._subscribers.append(subscriber)
        return lambda: self.unsubscribe(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            pass

    def connect(self, user_id: str) -> None:
        """Start connecting for ``user_id``; a no-op while connecting or open."""

        if not user_id:
            return
        self._user_id = user_id
        self._should_reconnect = True
        if self._state in (SyncState.CONNECTING, SyncState.OPEN):
            return
        self._cancel_reconnect()
        self._generation += 1
        self._state = SyncState.CONNECTING
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation))

    async def disconnect(self) -> None:
        """Close on purpose: no reconnect, identity cleared."""

        self._should_reconnect = False
        self._cancel_reconnect()
        self._generation += 1
        self._state = SyncState.IDLE
        self._opened.clear()
        self._user_id = None
        socket, self._socket = self._socket, None
        task, self._task = self._task, None
        if socket is not None:
            with contextlib.suppress(*_TRANSPORT_ERRORS):
                await socket.close()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def send_update(self, scope: Scope | str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Announce a local change.  Dropped silently when signed out or offline."""

        if not self._user_id:
            return False
        update = make_update(scope, self._user_id, client_id=self.client_id, payload=payload)
        return await self._send(update)

    async def wait_until_open(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._opened.wait(), timeout)

    # ------------------------------------------------------------------
    # Connection task
    # ------------------------------------------------------------------
    async def _run(self, generation: int) -> None:
        try:
            socket = await self._connector(self.url)
        except _TRANSPORT_ERRORS as exc:
            self._logger.log("sync_connect_failed", url=self.url, error=repr(exc))
            self._on_closed(generation)
            return

        if generation != self._generation:
            with contextlib.suppress(*_TRANSPORT_ERRORS):
                await socket.close()
            return

        self._socket = socket
        self._state = SyncState.OPEN
        self._opened.set()
        try:
            await socket.send(encode_message(Hello(user_id=self._user_id or "", client_id=self.client_id)))
            async for raw in socket:
                await self._handle_raw(raw)
        except _TRANSPORT_ERRORS as exc:
            self._logger.log("sync_connection_lost", url=self.url, error=repr(exc))
        finally:
            if self._socket is socket:
                self._socket = None
            self._on_closed(generation)

    def _on_closed(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._opened.clear()
        if self._should_reconnect and self._user_id:
            self._state = SyncState.CLOSED
            self._schedule_reconnect()
        else:
            self._state = SyncState.IDLE

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect_now)
        self._logger.log("sync_reconnect_scheduled", user=self._user_id, delay=self.reconnect_delay)

    def _reconnect_now(self) -> None:
        self._reconnect_handle = None
        if self._should_reconnect and self._user_id:
            self.connect(self._user_id)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def _send(self, message: SyncMessage) -> bool:
        socket = self._socket
        if socket is None or self._state is not SyncState.OPEN:
            return False
        try:
            await socket.send(encode_message(message))
        except _TRANSPORT_ERRORS as exc:
            self._logger.log("sync_send_failed", url=self.url, error=repr(exc))
            return False
        return True

    async def _handle_raw(self, raw: str | bytes) -> None:
        try:
            message = decode_message(raw)
        except MalformedMessageError as exc:
            self._logger.log("sync_message_dropped", reason=str(exc))
            return
        if isinstance(message, Heartbeat):
            if message.type is MessageType.PING:
                await self._send(Heartbeat(type=MessageType.PONG))
            return
        if not isinstance(message, SyncUpdate):
            return
        if message.client_id and message.client_id == self.client_id:
            return
        self._emit(message)

    def _emit(self, update: SyncUpdate) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(update)
            except Exception as exc:
                self._logger.log("sync_subscriber_failed", scope=update.scope_name, error=repr(exc))


__all__ = [
    "ClientSocket",
    "Connector",
    "DEFAULT_RECONNECT_SECONDS",
    "SYNC_PATH",
    "SyncClient",
    "SyncState",
    "build_sync_url",
]
