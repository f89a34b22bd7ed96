import asyncio
import json

import pytest

from familyhub.models import Scope, ThemeUpdate, TasksUpdate
from familyhub.ops import StructuredLogger
from familyhub.sync_client import SyncClient, SyncState, build_sync_url

URL = "ws://localhost:3000/api/ws"


class FakeSocket:
    def __init__(self) -> None:
        self.sent = []
        self.closed = False
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionResetError("socket closed")
        self.sent.append(json.loads(message))

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item

    def deliver(self, message) -> None:
        self.inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)


class FakeConnector:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.urls = []
        self.sockets = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_client(connector: FakeConnector, logger: StructuredLogger | None = None) -> SyncClient:
    return SyncClient(URL, connector=connector, reconnect_delay=0.01, client_id="client-a", logger=logger)


def test_client_id_is_generated_once_per_client() -> None:
    client = SyncClient(URL)
    other = SyncClient(URL)

    assert client.client_id.startswith("client-")
    assert client.client_id != other.client_id
    assert client.state is SyncState.IDLE


@pytest.mark.parametrize(
    "origin, expected",
    [
        ("https://family.example.com", "wss://family.example.com/api/ws"),
        ("http://localhost:3000/dashboard", "ws://localhost:3000/api/ws"),
    ],
)
def test_build_sync_url_follows_page_scheme(origin, expected) -> None:
    assert build_sync_url(origin) == expected


def test_hello_is_sent_when_socket_opens() -> None:
    connector = FakeConnector()

    async def scenario():
        client = make_client(connector)
        client.connect("parent-1")
        assert client.state is SyncState.CONNECTING
        await client.wait_until_open(1)
        await settle()
        client.connect("parent-1")
        await settle()
        state = client.state
        await client.disconnect()
        return state

    state = asyncio.run(scenario())

    assert state is SyncState.OPEN
    assert connector.urls == [URL]
    assert connector.sockets[0].sent[0] == {"type": "hello", "userId": "parent-1", "clientId": "client-a"}


def test_connect_without_user_does_nothing() -> None:
    connector = FakeConnector()

    async def scenario():
        client = make_client(connector)
        client.connect("")
        await settle()
        return client.state

    assert asyncio.run(scenario()) is SyncState.IDLE
    assert connector.urls == []


def test_own_echo_is_suppressed_and_others_are_emitted() -> None:
    connector = FakeConnector()
    received = []

    async def scenario():
        client = make_client(connector)
        client.subscribe(received.append)
        client.connect("parent-1")
        await client.wait_until_open(1)
        socket = connector.sockets[0]
        socket.deliver({"type": "update", "userId": "parent-1", "clientId": "client-a", "scope": "tasks"})
        socket.deliver({"type": "hello", "userId": "parent-1"})
        socket.deliver("{broken")
        socket.deliver(
            {
                "type": "update",
                "userId": "parent-1",
                "clientId": "client-b",
                "scope": "theme",
                "payload": {"theme": {"mode": "dark"}},
            }
        )
        socket.deliver({"type": "update", "userId": "parent-1", "scope": "tasks"})
        await settle()
        await client.disconnect()

    asyncio.run(scenario())

    assert len(received) == 2
    assert isinstance(received[0], ThemeUpdate)
    assert received[0].theme == {"mode": "dark"}
    assert received[0].client_id == "client-b"
    assert isinstance(received[1], TasksUpdate)


def test_ping_is_answered_with_pong_and_not_emitted() -> None:
    connector = FakeConnector()
    received = []

    async def scenario():
        client = make_client(connector)
        client.subscribe(received.append)
        client.connect("parent-1")
        await client.wait_until_open(1)
        connector.sockets[0].deliver({"type": "ping"})
        await settle()
        await client.disconnect()

    asyncio.run(scenario())

    assert connector.sockets[0].sent[-1] == {"type": "pong"}
    assert received == []


def test_send_update_requires_identity_and_open_socket() -> None:
    connector = FakeConnector()

    async def scenario():
        client = make_client(connector)
        before = await client.send_update(Scope.TASKS)
        client.connect("parent-1")
        await client.wait_until_open(1)
        await settle()
        sent = await client.send_update("meals", {"date": "2024-03-04"})
        await client.disconnect()
        after = await client.send_update(Scope.TASKS)
        return before, sent, after

    before, sent, after = asyncio.run(scenario())

    assert (before, sent, after) == (False, True, False)
    assert connector.sockets[0].sent[-1] == {
        "type": "update",
        "userId": "parent-1",
        "clientId": "client-a",
        "scope": "meals",
        "payload": {"date": "2024-03-04"},
    }


def test_unexpected_close_reconnects_with_same_identity() -> None:
    connector = FakeConnector()
    logger = StructuredLogger()

    async def scenario():
        client = make_client(connector, logger)
        client.connect("parent-1")
        await client.wait_until_open(1)
        await settle()
        connector.sockets[0].drop()
        await settle()
        snapshot = (client.state, client.reconnect_pending, len(logger.events("sync_reconnect_scheduled")))
        await asyncio.sleep(0.05)
        await settle()
        reopened = client.state
        await client.disconnect()
        return snapshot, reopened

    snapshot, reopened = asyncio.run(scenario())

    assert snapshot == (SyncState.CLOSED, True, 1)
    assert reopened is SyncState.OPEN
    assert len(connector.sockets) == 2
    assert connector.sockets[1].sent[0] == {"type": "hello", "userId": "parent-1", "clientId": "client-a"}


def test_connect_failures_are_retried_until_open() -> None:
    connector = FakeConnector(failures=2)
    logger = StructuredLogger()

    async def scenario():
        client = make_client(connector, logger)
        client.connect("parent-1")
        await client.wait_until_open(1)
        await client.disconnect()

    asyncio.run(scenario())

    assert len(connector.urls) == 3
    assert len(logger.events("sync_connect_failed")) == 2


def test_disconnect_cancels_pending_reconnect() -> None:
    connector = FakeConnector()

    async def scenario():
        client = make_client(connector)
        client.connect("parent-1")
        await client.wait_until_open(1)
        connector.sockets[0].drop()
        await settle()
        pending = client.reconnect_pending
        await client.disconnect()
        await asyncio.sleep(0.05)
        return pending, client

    pending, client = asyncio.run(scenario())

    assert pending is True
    assert client.reconnect_pending is False
    assert client.state is SyncState.IDLE
    assert client.user_id is None
    assert len(connector.urls) == 1


class BlockingConnector:
    """Connector whose handshake never finishes."""

    def __init__(self) -> None:
        self.calls = 0
        self.cancelled = False

    async def __call__(self, url: str):
        self.calls += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_disconnect_while_connecting_returns_to_idle() -> None:
    connector = BlockingConnector()

    async def scenario():
        client = SyncClient(URL, connector=connector, reconnect_delay=0.01, client_id="client-a")
        client.connect("parent-1")
        await settle()
        connecting = client.state
        await client.disconnect()
        await asyncio.sleep(0.05)
        return client, connecting

    client, connecting = asyncio.run(scenario())

    assert connecting is SyncState.CONNECTING
    assert client.state is SyncState.IDLE
    assert client.user_id is None
    assert connector.cancelled
    assert connector.calls == 1
    assert not client.reconnect_pending


def test_failing_subscriber_does_not_block_others() -> None:
    connector = FakeConnector()
    logger = StructuredLogger()
    received = []
    removed = []

    def broken(update):
        raise RuntimeError("view crashed")

    async def scenario():
        client = make_client(connector, logger)
        client.subscribe(broken)
        client.subscribe(received.append)
        unsubscribe = client.subscribe(removed.append)
        unsubscribe()
        client.connect("parent-1")
        await client.wait_until_open(1)
        connector.sockets[0].deliver({"type": "update", "userId": "parent-1", "clientId": "other", "scope": "inventory"})
        await settle()
        await client.disconnect()

    asyncio.run(scenario())

    assert [update.scope_name for update in received] == ["inventory"]
    assert removed == []
    assert logger.events("sync_subscriber_failed")[0]["scope"] == "inventory"
