import asyncio
import json

from familyhub.hub import UpdateHub
from familyhub.models import TasksUpdate, encode_message
from familyhub.ops import StructuredLogger


class FakeTransport:
    def __init__(self, *, fail_send: bool = False, answers_ping: bool = True) -> None:
        self.sent = []
        self.pings = 0
        self.open = True
        self.terminated = False
        self.fail_send = fail_send
        self.answers_ping = answers_ping

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, data: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))

    async def ping(self):
        self.pings += 1
        pong_waiter = asyncio.get_running_loop().create_future()
        if self.answers_ping:
            pong_waiter.set_result(None)
        return pong_waiter

    async def terminate(self) -> None:
        self.terminated = True
        self.open = False


class StalledTransport(FakeTransport):
    """A peer that stopped reading: every write and ping hangs forever."""

    async def send_text(self, data: str) -> None:
        await asyncio.Event().wait()

    async def ping(self):
        self.pings += 1
        await asyncio.Event().wait()

    async def terminate(self) -> None:
        self.terminated = True
        await asyncio.Event().wait()


def hello(user_id: str, client_id: str) -> str:
    return json.dumps({"type": "hello", "userId": user_id, "clientId": client_id})


def make_hub():
    logger = StructuredLogger()
    return UpdateHub(heartbeat_interval=0.01, send_timeout=0.05, logger=logger), logger


def connect(hub: UpdateHub, user_id: str, client_id: str, *, transport=None, **kwargs):
    transport = transport or FakeTransport(**kwargs)
    connection = hub.attach(transport)
    asyncio.run(hub.handle_text(connection, hello(user_id, client_id)))
    return connection, transport


def test_hello_registers_connection_under_user() -> None:
    hub, logger = make_hub()
    connection, _ = connect(hub, "parent-1", "client-a")

    assert connection.user_id == "parent-1"
    assert connection.client_id == "client-a"
    assert hub.connections_for("parent-1") == (connection,)
    assert hub.stats() == {"users": 1, "connections": 1}
    assert logger.events("sync_registered")[0]["client"] == "client-a"


def test_register_without_user_is_ignored() -> None:
    hub, _ = make_hub()
    connection = hub.attach(FakeTransport())

    hub.register(connection, "")
    hub.register(connection, None)

    assert hub.user_count() == 0


def test_reregister_moves_bucket() -> None:
    hub, _ = make_hub()
    connection, _ = connect(hub, "parent-1", "client-a")

    hub.register(connection, "parent-2", "client-b")

    assert hub.connection_count("parent-1") == 0
    assert hub.user_count() == 1
    assert hub.connections_for("parent-2") == (connection,)
    assert connection.client_id == "client-b"


def test_broadcast_skips_excluded_connection() -> None:
    hub, _ = make_hub()
    a, ta = connect(hub, "parent-1", "a")
    _, tb = connect(hub, "parent-1", "b")
    _, tc = connect(hub, "parent-1", "c")

    delivered = asyncio.run(hub.broadcast("parent-1", TasksUpdate(user_id="parent-1"), exclude=a))

    assert delivered == 2
    assert ta.sent == []
    assert tb.sent == [{"type": "update", "userId": "parent-1", "scope": "tasks"}]
    assert tc.sent == tb.sent


def test_broadcast_never_crosses_users() -> None:
    hub, _ = make_hub()
    _, mine = connect(hub, "parent-1", "a")
    _, theirs = connect(hub, "parent-2", "b")

    asyncio.run(hub.broadcast("parent-1", {"type": "update", "userId": "parent-1", "scope": "meals"}))

    assert len(mine.sent) == 1
    assert theirs.sent == []


def test_broadcast_to_unknown_user_is_noop() -> None:
    hub, _ = make_hub()

    assert asyncio.run(hub.broadcast("nobody", TasksUpdate(user_id="nobody"))) == 0


def test_broadcast_survives_failing_and_closed_sockets() -> None:
    hub, logger = make_hub()
    _, broken = connect(hub, "parent-1", "a", fail_send=True)
    _, closed = connect(hub, "parent-1", "b")
    _, healthy = connect(hub, "parent-1", "c")
    closed.open = False

    delivered = asyncio.run(hub.broadcast("parent-1", TasksUpdate(user_id="parent-1")))

    assert delivered == 1
    assert len(healthy.sent) == 1
    assert closed.sent == []
    assert hub.connection_count("parent-1") == 3
    assert logger.events("sync_send_failed")[0]["client"] == "a"


def test_unregister_twice_matches_unregister_once() -> None:
    hub, logger = make_hub()
    connection, _ = connect(hub, "parent-1", "a")
    other, _ = connect(hub, "parent-1", "b")

    hub.unregister(connection)
    after_once = (hub.stats(), hub.connections_for("parent-1"))
    hub.unregister(connection)

    assert (hub.stats(), hub.connections_for("parent-1")) == after_once
    assert hub.connections_for("parent-1") == (other,)
    assert len(logger.events("sync_unregistered")) == 1

    hub.unregister(other)
    assert hub.user_count() == 0


def test_update_is_relayed_to_other_sessions_stamped_with_sender() -> None:
    hub, _ = make_hub()
    sender, sender_transport = connect(hub, "parent-1", "client-a")
    _, peer = connect(hub, "parent-1", "client-b")
    _, stranger = connect(hub, "parent-2", "client-c")

    raw = json.dumps({"type": "update", "userId": "parent-1", "scope": "theme", "payload": {"theme": {"primary": "#123"}}})
    asyncio.run(hub.handle_text(sender, raw))

    assert sender_transport.sent == []
    assert stranger.sent == []
    assert peer.sent == [
        {
            "type": "update",
            "userId": "parent-1",
            "clientId": "client-a",
            "scope": "theme",
            "payload": {"theme": {"primary": "#123"}},
        }
    ]


def test_update_naming_another_user_is_dropped() -> None:
    hub, logger = make_hub()
    sender, _ = connect(hub, "parent-1", "a")
    _, victim = connect(hub, "parent-2", "b")
    _, peer = connect(hub, "parent-1", "c")

    raw = encode_message(TasksUpdate(user_id="parent-2"))
    asyncio.run(hub.handle_text(sender, raw))

    assert victim.sent == []
    assert peer.sent == []
    assert logger.events("sync_message_dropped")[0]["reason"] == "user mismatch"


def test_update_before_hello_is_dropped() -> None:
    hub, logger = make_hub()
    anonymous = hub.attach(FakeTransport())
    _, peer = connect(hub, "parent-1", "b")

    asyncio.run(hub.handle_text(anonymous, encode_message(TasksUpdate(user_id="parent-1"))))

    assert peer.sent == []
    assert logger.events("sync_message_dropped")[0]["reason"] == "update before hello"


def test_malformed_frames_are_dropped_without_closing() -> None:
    hub, logger = make_hub()
    connection, transport = connect(hub, "parent-1", "a")

    for raw in ("not json", "[1, 2]", '{"type": "shout"}', b"\xff\xfe"):
        asyncio.run(hub.handle_text(connection, raw))

    assert len(logger.events("sync_message_dropped")) == 4
    assert transport.open
    assert hub.connection_count("parent-1") == 1


def test_silent_connection_is_evicted_after_two_sweeps() -> None:
    hub, logger = make_hub()
    silent, silent_transport = connect(hub, "parent-1", "a", answers_ping=False)
    responsive, responsive_transport = connect(hub, "parent-1", "b")

    async def scenario():
        first = await hub.sweep()
        second = await hub.sweep()
        delivered = await hub.broadcast("parent-1", TasksUpdate(user_id="parent-1"))
        return first, second, delivered

    first, second, delivered = asyncio.run(scenario())

    assert (first, second) == (0, 1)
    assert silent_transport.pings == 1
    assert responsive_transport.pings == 2
    assert silent_transport.terminated
    assert not responsive_transport.terminated
    assert hub.connections_for("parent-1") == (responsive,)
    assert delivered == 1
    assert logger.events("sync_evicted")[0]["client"] == "a"
    assert silent not in hub.connections_for("parent-1")


def test_client_answering_protocol_pings_needs_no_json_pong() -> None:
    hub, _ = make_hub()
    connection, transport = connect(hub, "parent-1", "a")

    async def scenario():
        return [await hub.sweep() for _ in range(3)]

    assert asyncio.run(scenario()) == [0, 0, 0]
    assert transport.pings == 3
    assert not transport.terminated
    assert hub.connections_for("parent-1") == (connection,)


def test_in_band_pong_still_counts_as_alive() -> None:
    hub, _ = make_hub()
    connection, transport = connect(hub, "parent-1", "a", answers_ping=False)

    async def scenario():
        first = await hub.sweep()
        await hub.handle_text(connection, '{"type": "pong"}')
        second = await hub.sweep()
        return first, second

    assert asyncio.run(scenario()) == (0, 0)
    assert not transport.terminated
    assert hub.connection_count("parent-1") == 1


def test_stalled_peer_does_not_hold_up_siblings_or_the_sweep() -> None:
    hub, logger = make_hub()
    stuck, stalled = connect(hub, "parent-1", "stuck", transport=StalledTransport())
    _, first_peer = connect(hub, "parent-1", "b")
    _, second_peer = connect(hub, "parent-1", "c")

    async def scenario():
        delivered = await asyncio.wait_for(hub.broadcast("parent-1", TasksUpdate(user_id="parent-1")), 1)
        first = await asyncio.wait_for(hub.sweep(), 1)
        second = await asyncio.wait_for(hub.sweep(), 1)
        return delivered, first, second

    delivered, first, second = asyncio.run(scenario())

    assert delivered == 2
    assert len(first_peer.sent) == 1
    assert len(second_peer.sent) == 1
    assert (first, second) == (0, 1)
    assert stalled.terminated
    assert stuck not in hub.connections_for("parent-1")
    assert hub.connection_count("parent-1") == 2
    kinds = [event.get("kind") for event in logger.events("sync_send_failed")]
    assert kinds == [None, "ping", "terminate"]


def test_unregistered_connection_is_still_swept() -> None:
    hub, _ = make_hub()
    transport = FakeTransport(answers_ping=False)
    hub.attach(transport)

    asyncio.run(hub.sweep())
    evicted = asyncio.run(hub.sweep())

    assert evicted == 1
    assert transport.terminated
    assert hub.connection_count() == 0


def test_heartbeat_task_runs_until_stopped() -> None:
    hub, _ = make_hub()
    _, transport = connect(hub, "parent-1", "a")

    async def scenario():
        hub.start()
        assert hub.running
        await asyncio.sleep(0.05)
        await hub.stop()

    asyncio.run(scenario())

    assert transport.pings >= 1
    assert transport.terminated
    assert not hub.running
    assert hub.connection_count() == 0
