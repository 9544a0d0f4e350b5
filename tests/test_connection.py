"""
Connection manager tests. The transport is a FakeConnector, so every
scenario runs without a network.
"""
import asyncio

from core.bus import MessageBus, TOPIC_CONNECTION
from core.types import ConnectionState
from tests.fakes import FakeConnector, FakeSocket, refused, until
from uplink.connection import ConnectionManager

URL = "ws://10.0.2.2:8090"
HEADERS = {"websocket_client_type": "wearOS"}


def make_manager(connector, **kwargs):
    return ConnectionManager(URL, headers=HEADERS, connector=connector, **kwargs)


# ============================================================
# Establishing the connection
# ============================================================

def test_open_connects_with_client_header():
    async def scenario():
        connector = FakeConnector()
        manager = make_manager(connector)
        assert manager.state == ConnectionState.DISCONNECTED

        manager.open()
        assert await manager.wait_connected(timeout=1.0)
        assert manager.state == ConnectionState.CONNECTED
        assert connector.calls == [(URL, HEADERS)]
        await manager.close("done")

    asyncio.run(scenario())


def test_wait_connected_times_out():
    async def scenario():
        manager = make_manager(FakeConnector())
        assert await manager.wait_connected(timeout=0.01) is False

    asyncio.run(scenario())


# ============================================================
# Bounded reconnection
# ============================================================

def test_eleven_failures_make_ten_reconnects():
    """11 consecutive failures: initial attempt + 10 retries, no 11th retry."""
    async def scenario():
        connector = FakeConnector(then=refused)
        manager = make_manager(connector, max_retries=10)

        manager.open()
        await manager.wait_settled()

        assert len(connector.calls) == 11
        assert manager.open_attempts == 11
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.retry.retry_count == 10
        assert manager.retry.exhausted

    asyncio.run(scenario())


def test_retry_count_increments_by_one_per_failure():
    async def scenario():
        manager = make_manager(FakeConnector())
        opened = []
        manager.open = lambda: opened.append(manager.retry.retry_count)

        counts = []
        for _ in range(13):
            await manager.on_failure(ConnectionResetError("reset"))
            counts.append(manager.retry.retry_count)

        assert counts == [1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 10, 10, 10]
        assert opened == [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]

    asyncio.run(scenario())


def test_recovers_after_transient_failures():
    async def scenario():
        connector = FakeConnector(outcomes=[refused(), refused()])
        manager = make_manager(connector)

        manager.open()
        await manager.wait_settled()

        assert manager.is_connected
        assert len(connector.calls) == 3
        assert manager.retry.retry_count == 2

        manager.mark_healthy()
        assert manager.retry.retry_count == 0
        await manager.close("done")

    asyncio.run(scenario())


def test_dropped_connection_reconnects():
    async def scenario():
        connector = FakeConnector()
        manager = make_manager(connector)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        first = connector.sockets[0]
        first.drop(ConnectionResetError("network went away"))

        assert await until(lambda: len(connector.sockets) == 2 and manager.is_connected)
        assert manager.retry.retry_count == 1
        # The dropped socket is abandoned, not closed by us
        assert first.close_code is None
        await manager.close("done")

    asyncio.run(scenario())


def test_server_closing_counts_as_failure():
    async def scenario():
        connector = FakeConnector(outcomes=[FakeSocket()], then=refused)
        manager = make_manager(connector, max_retries=2)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        connector.sockets[0].drop()
        assert await until(lambda: manager.retry.exhausted)
        await manager.wait_settled()

        assert len(connector.calls) == 3
        assert manager.state == ConnectionState.DISCONNECTED

    asyncio.run(scenario())


# ============================================================
# Intentional shutdown
# ============================================================

def test_close_uses_normal_closure():
    async def scenario():
        connector = FakeConnector()
        manager = make_manager(connector)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        await manager.close("user stopped")

        socket = connector.sockets[0]
        assert socket.close_code == 1000
        assert socket.close_reason == "user stopped"
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.retry.terminated

    asyncio.run(scenario())


def test_failures_after_close_never_reconnect():
    """close() then failure callbacks: still DISCONNECTED, retry count unchanged."""
    async def scenario():
        connector = FakeConnector(outcomes=[refused(), FakeSocket()])
        manager = make_manager(connector)
        manager.open()
        await manager.wait_settled()
        retries_before = manager.retry.retry_count

        await manager.close("user stopped")
        for _ in range(5):
            await manager.on_failure(ConnectionResetError("late failure"))

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.retry.retry_count == retries_before
        assert len(connector.calls) == 2

        manager.open()
        assert len(connector.calls) == 2

    asyncio.run(scenario())


def test_close_while_connecting_cancels_attempt():
    async def scenario():
        gate = asyncio.Event()

        async def slow_connector(url, headers):
            await gate.wait()
            return FakeSocket()

        manager = make_manager(slow_connector)
        manager.open()
        await asyncio.sleep(0)

        await manager.close("stopped")
        gate.set()
        await manager.wait_settled()

        assert manager.state == ConnectionState.DISCONNECTED

    asyncio.run(scenario())


def test_socket_opened_after_close_is_shut():
    async def scenario():
        manager = make_manager(FakeConnector())
        await manager.close("stopped")

        late = FakeSocket()
        await manager.on_open(late)

        assert late.closed
        assert manager.state == ConnectionState.DISCONNECTED

    asyncio.run(scenario())


# ============================================================
# Sending
# ============================================================

def test_send_without_connection_drops():
    async def scenario():
        manager = make_manager(FakeConnector())
        assert await manager.send(b"payload") is False

    asyncio.run(scenario())


def test_send_delivers_bytes():
    async def scenario():
        connector = FakeConnector()
        manager = make_manager(connector)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        assert await manager.send(b"\x08\x01") is True
        assert connector.sockets[0].sent == [b"\x08\x01"]
        await manager.close("done")

    asyncio.run(scenario())


def test_send_exception_is_logged_and_dropped():
    async def scenario():
        connector = FakeConnector(then=lambda: FakeSocket(fail_sends=True))
        manager = make_manager(connector)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        assert await manager.send(b"payload") is False
        # A failed send does not tear the connection down
        assert manager.is_connected
        await manager.close("done")

    asyncio.run(scenario())


def test_send_timeout_drops_message():
    async def scenario():
        connector = FakeConnector(then=lambda: FakeSocket(send_delay=1.0))
        manager = make_manager(connector, send_timeout=0.01)
        manager.open()
        await manager.wait_connected(timeout=1.0)

        assert await manager.send(b"payload") is False
        await manager.close("done")

    asyncio.run(scenario())


# ============================================================
# State events
# ============================================================

def test_transitions_published_on_bus():
    async def scenario():
        bus = MessageBus()
        events = []

        async def collect(event):
            events.append(event)

        bus.subscribe(TOPIC_CONNECTION, collect)
        manager = make_manager(FakeConnector(), bus=bus)
        manager.open()
        await manager.wait_connected(timeout=1.0)
        await manager.close("done")

        assert [(e['from'], e['to']) for e in events] == [
            ("DISCONNECTED", "CONNECTED"),
            ("CONNECTED", "DISCONNECTED"),
        ]
        assert events[-1]['terminated'] is True

    asyncio.run(scenario())
