"""Server-side fan-out of change notifications to a user's live sessions.

The hub keeps a registry of ``user_id -> {HubConnection}`` and relays
``update`` messages to every other session of the same user.  It is
transport agnostic: anything implementing :class:`Transport` can be attached,
which keeps the registry logic testable without a network.  A periodic
heartbeat sweep sends transport-level pings and evicts half-open connections
whose pong never came back.

All registry mutation happens synchronously on the event loop, so
``register``/``unregister`` never interleave.  ``broadcast`` iterates over a
snapshot of the bucket; a connection registered while a broadcast is in
flight may or may not receive that message.  Every send, ping and close is
bounded by ``send_timeout`` so a peer that stopped reading cannot stall its
siblings or the sweep.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Dict, Iterable, Mapping, Optional, Protocol, Set

from .exceptions import MalformedMessageError
from .models import Heartbeat, Hello, MessageType, SyncMessage, SyncUpdate, decode_message, encode_message
from .ops import StructuredLogger

DEFAULT_HEARTBEAT_SECONDS = 30.0
DEFAULT_SEND_TIMEOUT_SECONDS = 10.0


class Transport(Protocol):
    """Minimal surface the hub needs from a socket.

    ``ping`` sends a protocol level ping and returns an awaitable that
    completes when the matching pong arrives, the same contract as
    ``websockets`` connections.
    """

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def ping(self) -> Awaitable[Any]: ...

    async def terminate(self) -> None: ...


class HubConnection:
    """One attached session.  Identity comparison, so it is safe to use in sets."""

    __slots__ = ("transport", "user_id", "client_id", "alive")

    def __init__(self, transport: Transport) -> None:
        self.transport = transport
        self.user_id: Optional[str] = None
        self.client_id: Optional[str] = None
        self.alive = True

    @property
    def is_open(self) -> bool:
        return self.transport.is_open

    def __repr__(self) -> str:
        return f"HubConnection(user_id={self.user_id!r}, client_id={self.client_id!r}, alive={self.alive})"


class UpdateHub:
    """Registry of live sync sessions with per-user broadcast."""

    def __init__(
        self,
        *,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_SECONDS,
        send_timeout: float = DEFAULT_SEND_TIMEOUT_SECONDS,
        logger: StructuredLogger | None = None,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.send_timeout = send_timeout
        self._logger = logger or StructuredLogger()
        self._buckets: Dict[str, Set[HubConnection]] = {}
        self._connections: Set[HubConnection] = set()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    def attach(self, transport: Transport) -> HubConnection:
        """Track a freshly accepted transport; it joins a bucket on ``hello``."""

        connection = HubConnection(transport)
        self._connections.add(connection)
        return connection

    def register(self, connection: HubConnection, user_id: Optional[str], client_id: Optional[str] = None) -> None:
        if not user_id:
            return
        if connection.user_id and connection.user_id != user_id:
            self._remove_from_bucket(connection)
        connection.user_id = user_id
        connection.client_id = client_id or None
        self._connections.add(connection)
        self._buckets.setdefault(user_id, set()).add(connection)
        self._logger.log("sync_registered", user=user_id, client=connection.client_id)

    def unregister(self, connection: HubConnection) -> None:
        """Forget ``connection``.  Safe to call more than once."""

        known = connection in self._connections
        self._connections.discard(connection)
        removed = self._remove_from_bucket(connection)
        if known or removed:
            self._logger.log("sync_unregistered", user=connection.user_id, client=connection.client_id)

    def _remove_from_bucket(self, connection: HubConnection) -> bool:
        if not connection.user_id:
            return False
        bucket = self._buckets.get(connection.user_id)
        if not bucket or connection not in bucket:
            return False
        bucket.discard(connection)
        if not bucket:
            del self._buckets[connection.user_id]
        return True

    def connections_for(self, user_id: str) -> tuple[HubConnection, ...]:
        return tuple(self._buckets.get(user_id, ()))

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self._connections)
        return len(self._buckets.get(user_id, ()))

    def user_count(self) -> int:
        return len(self._buckets)

    def stats(self) -> Dict[str, int]:
        return {"users": self.user_count(), "connections": self.connection_count()}

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------
    async def broadcast(
        self,
        user_id: str,
        message: SyncMessage | Mapping[str, Any],
        exclude: Optional[HubConnection] = None,
    ) -> int:
        """Send ``message`` to every open session of ``user_id`` except ``exclude``.

        Sends run concurrently, each bounded by ``send_timeout``.  Returns the
        number of successful deliveries.  A failing or stalled send is logged
        and skipped; it never reaches the caller.
        """

        targets = [
            connection
            for connection in tuple(self._buckets.get(user_id, ()))
            if connection is not exclude and connection.is_open
        ]
        if not targets:
            return 0
        text = encode_message(message)
        results = await asyncio.gather(*(self._deliver(connection, text) for connection in targets))
        return sum(1 for delivered in results if delivered)

    async def _deliver(self, connection: HubConnection, text: str) -> bool:
        try:
            await asyncio.wait_for(connection.transport.send_text(text), self.send_timeout)
        except Exception as exc:
            self._logger.log(
                "sync_send_failed",
                user=connection.user_id,
                client=connection.client_id,
                error=repr(exc),
            )
            return False
        return True

    async def handle_text(self, connection: HubConnection, raw: str | bytes) -> None:
        """Dispatch one inbound frame from ``connection``."""

        try:
            message = decode_message(raw)
        except MalformedMessageError as exc:
            self._logger.log("sync_message_dropped", reason=str(exc), user=connection.user_id)
            return

        if isinstance(message, Hello):
            self.register(connection, message.user_id, message.client_id)
        elif isinstance(message, Heartbeat):
            # clients without access to protocol pongs may answer in-band
            if message.type is MessageType.PONG:
                self.mark_alive(connection)
        elif isinstance(message, SyncUpdate):
            await self._relay(connection, message)

    async def _relay(self, connection: HubConnection, update: SyncUpdate) -> None:
        if not connection.user_id:
            self._logger.log("sync_message_dropped", reason="update before hello", scope=update.scope_name)
            return
        if update.user_id and update.user_id != connection.user_id:
            self._logger.log(
                "sync_message_dropped",
                reason="user mismatch",
                user=connection.user_id,
                claimed=update.user_id,
            )
            return
        outgoing = update.to_wire()
        outgoing["userId"] = connection.user_id
        if connection.client_id:
            outgoing["clientId"] = connection.client_id
        await self.broadcast(connection.user_id, outgoing, exclude=connection)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------
    def mark_alive(self, connection: HubConnection) -> None:
        connection.alive = True

    async def sweep(self) -> int:
        """Run one heartbeat cycle; returns how many connections were evicted.

        Connections that did not answer the previous ping are terminated.  The
        rest are marked unanswered and pinged; a pong arriving within
        ``send_timeout`` marks them alive again.
        """

        stale = [connection for connection in tuple(self._connections) if not connection.alive]
        await self._evict_all(stale)
        pinged = tuple(self._connections)
        for connection in pinged:
            connection.alive = False
        await asyncio.gather(*(self._await_pong(connection) for connection in pinged))
        return len(stale)

    async def _await_pong(self, connection: HubConnection) -> None:
        try:
            pong_waiter = await asyncio.wait_for(connection.transport.ping(), self.send_timeout)
            await asyncio.wait_for(pong_waiter, self.send_timeout)
        except Exception as exc:
            self._logger.log("sync_send_failed", user=connection.user_id, error=repr(exc), kind="ping")
            return
        self.mark_alive(connection)

    async def _evict_all(self, connections: Iterable[HubConnection]) -> None:
        await asyncio.gather(*(self._evict(connection) for connection in connections))

    async def _evict(self, connection: HubConnection) -> None:
        self._logger.log("sync_evicted", user=connection.user_id, client=connection.client_id)
        try:
            await asyncio.wait_for(connection.transport.terminate(), self.send_timeout)
        except Exception as exc:
            self._logger.log("sync_send_failed", user=connection.user_id, error=repr(exc), kind="terminate")
        self.unregister(connection)

    async def run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.sweep()

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.get_running_loop().create_task(self.run_heartbeat())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._evict_all(tuple(self._connections))

    @property
    def running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()


__all__ = ["DEFAULT_HEARTBEAT_SECONDS", "DEFAULT_SEND_TIMEOUT_SECONDS", "HubConnection", "Transport", "UpdateHub"]
