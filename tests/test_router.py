import asyncio
import json
import logging

from chatrelay.protocol.envelope import parse_envelope
from chatrelay.realtime.connection import Connection
from chatrelay.realtime.registry import Registry
from chatrelay.realtime.router import Router

from fakes import BlockingStore, FailingStore, FakeTransport, RecordingStore, settle


def _setup(store=None, **kw):
    reg = Registry()
    router = Router(reg, store, **kw)
    return reg, router


def _conn(reg, identity=None):
    conn = Connection(FakeTransport(), identity=identity)
    reg.add_connection(conn)
    return conn


def _drain(conn):
    out = []
    while not conn.outbound.empty():
        out.append(json.loads(conn.outbound.get_nowait()))
    return out


async def _send(router, conn, obj):
    await router.dispatch(conn, parse_envelope(json.dumps(obj)))


def test_end_to_end_message_between_two_users():
    async def scenario():
        store = RecordingStore()
        reg, router = _setup(store)
        a, b = _conn(reg), _conn(reg)

        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, b, {"command": "register", "userId": "2"})
        msg = {"command": "message", "from": "1", "to": "2", "message": "hi"}
        await _send(router, a, msg)
        await router.drain()

        assert _drain(b) == [msg]
        assert _drain(a) == []
        assert len(store.calls) == 1
        sender, receiver, body, ts = store.calls[0]
        assert (sender, receiver, body) == ("1", "2", "hi")
        assert ts.tzinfo is not None

    asyncio.run(scenario())


def test_single_recipient_delivered_exactly_once():
    async def scenario():
        reg, router = _setup()
        a, b, c = _conn(reg), _conn(reg), _conn(reg)
        for conn, uid in ((a, "1"), (b, "2"), (c, "3")):
            await _send(router, conn, {"command": "register", "userId": uid})

        await _send(router, a, {"command": "message", "from": "1", "to": "2", "message": "only b"})

        assert len(_drain(b)) == 1
        assert _drain(a) == []
        assert _drain(c) == []

    asyncio.run(scenario())


def test_all_tabs_of_recipient_receive_message():
    async def scenario():
        reg, router = _setup()
        a, b1, b2 = _conn(reg), _conn(reg), _conn(reg)
        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, b1, {"command": "register", "userId": "2"})
        await _send(router, b2, {"command": "register", "userId": "2"})

        await _send(router, a, {"command": "message", "from": "1", "to": "2", "message": "both"})

        assert [f["message"] for f in _drain(b1)] == ["both"]
        assert [f["message"] for f in _drain(b2)] == ["both"]

    asyncio.run(scenario())


def test_message_to_offline_user_is_dropped_but_persisted():
    async def scenario():
        store = RecordingStore()
        reg, router = _setup(store)
        a = _conn(reg)
        await _send(router, a, {"command": "register", "userId": "1"})

        await _send(router, a, {"command": "message", "from": "1", "to": "ghost", "message": "anyone?"})
        await router.drain()

        # no error back to the sender
        assert _drain(a) == []
        assert [c[:3] for c in store.calls] == [("1", "ghost", "anyone?")]

    asyncio.run(scenario())


def test_message_after_recipient_disconnects_is_dropped():
    async def scenario():
        reg, router = _setup()
        a, b = _conn(reg), _conn(reg)
        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, b, {"command": "register", "userId": "2"})

        await a.close()
        reg.unregister(a.id)

        await _send(router, b, {"command": "message", "from": "2", "to": "1", "message": "still there?"})
        assert not reg.is_online("1")
        assert _drain(b) == []
        assert a.transport.sent == []

    asyncio.run(scenario())


def test_reregistered_connection_no_longer_receives_old_identity():
    async def scenario():
        reg, router = _setup()
        a, b = _conn(reg), _conn(reg)
        await _send(router, a, {"command": "register", "userId": "u1"})
        await _send(router, a, {"command": "register", "userId": "u2"})
        await _send(router, b, {"command": "register", "userId": "x"})

        await _send(router, b, {"command": "message", "from": "x", "to": "u1", "message": "old"})
        await _send(router, b, {"command": "message", "from": "x", "to": "u2", "message": "new"})

        assert [f["message"] for f in _drain(a)] == ["new"]

    asyncio.run(scenario())


def test_persistence_failure_does_not_block_delivery(caplog):
    async def scenario():
        store = FailingStore()
        reg, router = _setup(store)
        a, b = _conn(reg), _conn(reg)
        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, b, {"command": "register", "userId": "2"})

        await _send(router, a, {"command": "message", "from": "1", "to": "2", "message": "hi"})
        await router.drain()

        assert [f["message"] for f in _drain(b)] == ["hi"]
        assert store.attempts == 1

    with caplog.at_level(logging.WARNING, logger="chatrelay.realtime.router"):
        asyncio.run(scenario())
    assert "failed to persist message 1 -> 2" in caplog.text


def test_delivery_does_not_wait_for_persistence():
    async def scenario():
        store = BlockingStore()
        reg, router = _setup(store)
        a, b = _conn(reg), _conn(reg)
        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, b, {"command": "register", "userId": "2"})

        await _send(router, a, {"command": "message", "from": "1", "to": "2", "message": "fast"})
        await settle()
        assert len(_drain(b)) == 1
        assert store.calls == []

        store.release.set()
        await router.drain()
        assert len(store.calls) == 1

    asyncio.run(scenario())


def test_unknown_envelope_is_ignored():
    async def scenario():
        reg, router = _setup()
        a = _conn(reg)
        assert parse_envelope('{"command": "typing", "to": "2"}') is None
        await router.dispatch(a, None)
        assert _drain(a) == []
        assert reg.online_users() == []

    asyncio.run(scenario())


def test_register_ack_when_enabled():
    async def scenario():
        reg, router = _setup(ack_register=True)
        a = _conn(reg)
        await _send(router, a, {"command": "register", "userId": 7})
        assert _drain(a) == [{"command": "registered", "userId": "7"}]
        assert reg.is_online("7")

    asyncio.run(scenario())


def test_authenticated_connection_cannot_claim_another_identity():
    async def scenario():
        store = RecordingStore()
        reg, router = _setup(store)
        a = _conn(reg, identity="1")
        b = _conn(reg)
        await _send(router, b, {"command": "register", "userId": "2"})

        await _send(router, a, {"command": "register", "userId": "2"})
        assert [f["code"] for f in _drain(a)] == ["IDENTITY_MISMATCH"]
        assert reg.user_of(a.id) is None

        await _send(router, a, {"command": "message", "from": "2", "to": "2", "message": "spoof"})
        await router.drain()
        assert [f["code"] for f in _drain(a)] == ["IDENTITY_MISMATCH"]
        assert _drain(b) == []
        assert store.calls == []

        await _send(router, a, {"command": "register", "userId": "1"})
        await _send(router, a, {"command": "message", "from": "1", "to": "2", "message": "legit"})
        assert [f["message"] for f in _drain(b)] == ["legit"]

    asyncio.run(scenario())
