import asyncio

import pytest

from pomelobot.errors import (
    ConnectionClosedError,
    HandshakeError,
    HeartbeatTimeoutError,
    RouteCompressionError,
    SessionTimeoutError,
    TransportError,
)
from pomelobot.session import HeartbeatState, Session, SessionConfig

from pomelo_stubs import NO_REPLY, StubServerTransport


def _session(stub: StubServerTransport, **kwargs) -> Session:
    config = kwargs.pop("session_config", SessionConfig(request_timeout=0.2, connect_timeout=0.2))
    return Session(session_config=config, transport=stub, **kwargs)


def test_connect_handshakes_and_acks(stub_server):
    async def scenario():
        session = _session(stub_server)
        state = await session.connect()
        await asyncio.sleep(0)
        return session, state

    session, state = asyncio.run(scenario())
    assert state.ready and session.ready
    assert stub_server.handshakes == [{"sys": {"protoVersion": 0}, "user": {}}]
    assert stub_server.acks == 1


def test_handshake_rejected():
    stub = StubServerTransport(handshake_code=501)

    async def scenario():
        session = _session(stub)
        with pytest.raises(HandshakeError) as excinfo:
            await session.connect()
        return session, excinfo.value

    session, exc = asyncio.run(scenario())
    assert exc.code == 501
    assert not session.ready
    assert stub.acks == 0


def test_handshake_timeout():
    stub = StubServerTransport(answer_handshake=False)

    async def scenario():
        session = _session(stub)
        with pytest.raises(SessionTimeoutError) as excinfo:
            await session.connect()
        return excinfo.value

    exc = asyncio.run(scenario())
    assert isinstance(exc, TimeoutError)
    assert "timeout" in str(exc)


def test_late_handshake_after_timeout_is_ignored():
    stub = StubServerTransport(answer_handshake=False, heartbeat=5, route_dict={"a.b.c": 1})

    async def scenario():
        session = _session(stub)
        with pytest.raises(SessionTimeoutError):
            await session.connect()
        stub._reply_handshake()
        await asyncio.sleep(0.01)
        return session

    session = asyncio.run(scenario())
    assert not session.ready
    assert session.state.heartbeat_interval is None
    assert session.state.route_to_code == {}


def test_negotiated_protos_fail_the_handshake():
    stub = StubServerTransport(protos={"server": {"onChat": {"required string msg": 1}}})

    async def scenario():
        session = _session(stub)
        with pytest.raises(HandshakeError, match="protobuf") as excinfo:
            await session.connect()
        return session, excinfo.value

    session, exc = asyncio.run(scenario())
    assert exc.code == 200
    assert "server" in session.state.protos
    assert not session.ready
    assert stub.acks == 0


def test_connect_failure_is_transport_error():
    stub = StubServerTransport(fail_connect=True)

    async def scenario():
        with pytest.raises(TransportError):
            await _session(stub).connect()

    asyncio.run(scenario())


def test_request_ids_are_unique_and_responses_correlate(stub_server):
    stub_server.handlers["area.h.echo"] = lambda payload: {"code": 200, "n": payload["n"]}

    async def scenario():
        session = _session(stub_server)
        await session.connect()
        results = await asyncio.gather(*(session.request("area.h.echo", {"n": n}) for n in range(5)))
        return session, results

    session, results = asyncio.run(scenario())
    assert [r["n"] for r in results] == list(range(5))
    ids = [req.id for req in stub_server.requests]
    assert len(set(ids)) == len(ids)
    assert ids == sorted(ids)
    assert session.pending_count == 0


def test_out_of_order_responses_reach_their_callers(stub_server):
    stub_server.handlers["slow.h.call"] = lambda payload: NO_REPLY

    async def scenario():
        session = _session(stub_server)
        await session.connect()
        first = asyncio.ensure_future(session.request("slow.h.call", {"n": 1}))
        second = asyncio.ensure_future(session.request("slow.h.call", {"n": 2}))
        await asyncio.sleep(0.01)
        ids = {req.payload["n"]: req.id for req in stub_server.requests}
        stub_server.respond(ids[2], {"n": 2})
        stub_server.respond(ids[1], {"n": 1})
        return await asyncio.gather(first, second)

    assert asyncio.run(scenario()) == [{"n": 1}, {"n": 2}]


def test_request_before_connect_raises(stub_server):
    async def scenario():
        with pytest.raises(TransportError):
            await _session(stub_server).request("a.b.c")

    asyncio.run(scenario())


def test_request_timeout_then_late_response_is_pushed(stub_server):
    stub_server.handlers["slow.h.call"] = lambda payload: NO_REPLY
    pushes = []

    async def scenario():
        session = _session(stub_server, message_handler=lambda route, msg: pushes.append((route, msg)))
        await session.connect()
        with pytest.raises(SessionTimeoutError, match="slow.h.call timeout"):
            await session.request("slow.h.call", {"x": 1})
        assert session.pending_count == 0
        stub_server.respond(stub_server.requests[-1].id, {"late": True})
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert pushes == [(None, {"late": True})]


def test_route_dictionary_compresses_requests_and_pushes():
    stub = StubServerTransport(route_dict={"chat.h.send": 7, "onChat": 9})
    pushes = []

    async def scenario():
        session = _session(stub, message_handler=lambda route, msg: pushes.append((route, msg)))
        await session.connect()
        assert session.compress_route("chat.h.send") == (True, 7)
        assert session.compress_route("other.h.x") == (False, "other.h.x")
        await session.request("chat.h.send", {"m": "hi"})
        stub.push("onChat", {"m": "hi"})
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert stub.requests[0].compressed
    assert stub.requests[0].route == "chat.h.send"
    assert pushes == [("onChat", {"m": "hi"})]


def test_unknown_route_code_is_reported_not_raised():
    stub = StubServerTransport(route_dict={"known": 1})
    errors = []

    async def scenario():
        session = _session(stub, error_handler=errors.append)
        await session.connect()
        with pytest.raises(RouteCompressionError, match="route compress not found 42"):
            session.decompress_route(42)
        stub.route_dict[""] = 42
        stub.push("", {"x": 1})
        await asyncio.sleep(0.01)
        return session

    session = asyncio.run(scenario())
    assert any(isinstance(exc, RouteCompressionError) for exc in errors)


def test_kick_is_delivered(stub_server):
    kicks = []

    async def scenario():
        session = _session(stub_server, kick_handler=kicks.append)
        await session.connect()
        stub_server.kick({"reason": "bye"})
        await asyncio.sleep(0.01)

    asyncio.run(scenario())
    assert kicks == [{"reason": "bye"}]


def test_heartbeat_echo_keeps_state_machine_cycling():
    stub = StubServerTransport(heartbeat=0.02)

    async def scenario():
        session = _session(stub)
        state = await session.connect()
        await asyncio.sleep(0.15)
        hb_state = session.heartbeat_state
        await session.disconnect()
        return state, hb_state

    state, hb_state = asyncio.run(scenario())
    assert state.heartbeat_interval == pytest.approx(0.02)
    assert state.heartbeat_timeout == pytest.approx(0.04)
    assert stub.heartbeats_received >= 2
    assert hb_state in (HeartbeatState.ECHO_SCHEDULED, HeartbeatState.TIMEOUT_ARMED)


def test_heartbeat_timeout_is_reported_but_not_fatal():
    stub = StubServerTransport(heartbeat=0.02, echo_heartbeats=False)
    errors = []

    async def scenario():
        session = _session(stub, error_handler=errors.append)
        await session.connect()
        # echo after 0.02s, then alarm after 0.04s + 0.5s margin
        await asyncio.sleep(0.65)
        still_ready = session.ready
        response = await session.request("a.b.c", {"k": 1})
        await session.disconnect()
        return still_ready, response

    still_ready, response = asyncio.run(scenario())
    assert any(isinstance(exc, HeartbeatTimeoutError) for exc in errors)
    assert still_ready
    assert response["echo"] == {"k": 1}


def test_disconnect_fails_pending_requests(stub_server):
    stub_server.handlers["hang"] = lambda payload: NO_REPLY
    closes = []

    async def scenario():
        session = Session(
            session_config=SessionConfig(request_timeout=5.0),
            transport=stub_server,
            disconnect_handler=lambda code, reason: closes.append(code),
        )
        await session.connect()
        pending = asyncio.ensure_future(session.request("hang"))
        await asyncio.sleep(0.01)
        assert session.pending_count == 1
        await session.disconnect()
        with pytest.raises(ConnectionClosedError):
            await pending
        return session

    session = asyncio.run(scenario())
    assert not session.ready
    assert closes == [1000]
    assert stub_server.closed_with == 1000


def test_server_drop_fails_pending_and_reports_code(stub_server):
    stub_server.handlers["hang"] = lambda payload: NO_REPLY
    closes = []

    async def scenario():
        session = Session(
            session_config=SessionConfig(request_timeout=5.0),
            transport=stub_server,
            disconnect_handler=lambda code, reason: closes.append((code, reason)),
        )
        await session.connect()
        pending = asyncio.ensure_future(session.request("hang"))
        await asyncio.sleep(0.01)
        stub_server.drop(1006, "gone")
        with pytest.raises(ConnectionClosedError):
            await pending

    asyncio.run(scenario())
    assert closes == [(1006, "gone")]


def test_notify_sends_without_id(stub_server):
    async def scenario():
        session = _session(stub_server)
        await session.connect()
        await session.notify("chat.h.typing", {"on": True})

    asyncio.run(scenario())
    assert stub_server.notifies[0].route == "chat.h.typing"
    assert stub_server.notifies[0].payload == {"on": True}
    assert stub_server.requests == []
