"""
tests.test_session
~~~~~~~~~~~~~~~~~~

Session 分派与生命周期单元测试，以及广播限流器。
"""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.rate_limit import WebSocketRateLimiter
from app.schemas.relay_events import ClientFrame
from app.services.connection import Connection
from app.services.event_log import EventLog
from app.services.relay import RelayCore
from app.services.session import Session, SessionState


def _session(relay: RelayCore, conn_id: str = "c1", interval: float = 0.0) -> Session:
    connection = Connection(conn_id, MagicMock(), addr="127.0.0.1")
    return Session(relay, connection, rate_limiter=WebSocketRateLimiter(interval_seconds=interval))


class TestSessionDispatch:
    """测试上行事件分派。"""

    @pytest.mark.asyncio
    async def test_open_registers_connection(self, relay: RelayCore) -> None:
        session = _session(relay)

        await session.open()

        assert relay.connections.get("c1") is session.connection
        assert session.state is SessionState.CONNECTED
        assert session.rooms == []

    @pytest.mark.asyncio
    async def test_join_and_broadcast(self, relay: RelayCore) -> None:
        session = _session(relay)
        await session.open()

        await session.dispatch_text(json.dumps({
            "event": "join", "data": {"room": "lobby", "peer": {"name": "alice"}, "max_log_entries": 10},
        }))
        await session.dispatch(ClientFrame(event="broadcast", data={"room": "lobby", "msg": "hi"}))

        frames = session.connection.pending()
        assert [f["event"] for f in frames] == ["event:join", "event:broadcast"]
        assert frames[1]["data"] == {"room": "lobby", "msg": "hi", "peer": {"name": "alice"}, "is_live": True}
        assert session.rooms == ["lobby"]

    @pytest.mark.asyncio
    async def test_leave(self, relay: RelayCore) -> None:
        session = _session(relay)
        await session.open()
        await session.dispatch(ClientFrame(event="join", data={"room": "lobby", "peer": "alice"}))
        await session.dispatch(ClientFrame(event="join", data={"room": "other", "peer": "alice"}))

        await session.dispatch(ClientFrame(event="leave", data={"room": "lobby"}))

        assert session.rooms == ["other"]
        assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_leave_unjoined_room_is_logged_as_error(self, relay: RelayCore, event_log: EventLog, store) -> None:
        session = _session(relay)
        await session.open()

        await session.dispatch(ClientFrame(event="leave", data={"room": "lobby"}))
        await event_log.flush()

        [record] = store.records("_general")
        assert record["kind"] == "on:error"
        assert record["data"]["type"] == "NotInRoomError"
        assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_unknown_event_is_logged_as_error(self, relay: RelayCore, event_log: EventLog, store) -> None:
        session = _session(relay)
        await session.open()

        await session.dispatch(ClientFrame(event="room-set-metadata", data={}))
        await event_log.flush()

        [record] = store.records("_general")
        assert record["kind"] == "on:error"
        assert record["data"]["type"] == "UnknownEventError"
        assert session.connection.pending() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [
        "not json at all",
        json.dumps(["join"]),
        json.dumps({"data": {}}),
        json.dumps({"event": "join", "data": {"peer": "alice"}}),
        json.dumps({"event": "join", "data": {"room": ""}}),
        json.dumps({"event": "broadcast", "data": {"msg": "no room"}}),
        json.dumps({"event": "leave", "data": {}}),
    ])
    async def test_invalid_frames_become_errors(self, relay: RelayCore, event_log: EventLog, store, text: str) -> None:
        """无法解析或载荷无效的帧转成 on:error，会话保持打开。"""
        session = _session(relay)
        await session.open()

        await session.dispatch_text(text)
        await event_log.flush()

        assert store.kinds("_general") == ["on:error"]
        assert session.state is SessionState.CONNECTED
        assert relay.rooms.rooms() == []

    @pytest.mark.asyncio
    async def test_handler_exception_is_contained(self, relay: RelayCore) -> None:
        session = _session(relay)
        await session.open()
        relay.broadcast = AsyncMock(side_effect=RuntimeError("boom"))
        relay.error = AsyncMock()

        await session.dispatch(ClientFrame(event="broadcast", data={"room": "lobby", "msg": "x"}))

        relay.error.assert_awaited_once()
        conn_id, err = relay.error.call_args[0]
        assert conn_id == "c1"
        assert isinstance(err, RuntimeError)

    @pytest.mark.asyncio
    async def test_broadcast_rate_limited(self, relay: RelayCore, event_log: EventLog, store) -> None:
        """开启限流后，过快的广播被丢弃且不写日志。"""
        session = _session(relay, interval=60.0)
        await session.open()

        for msg in ("first", "second"):
            await session.dispatch(ClientFrame(event="broadcast", data={"room": "lobby", "msg": msg}))
        await event_log.flush()

        logged = [r["data"]["msg"] for r in store.records("lobby") if r["kind"] == "event:broadcast"]
        assert logged == ["first"]


class TestSessionClose:
    """测试会话关闭。"""

    @pytest.mark.asyncio
    async def test_close_runs_both_phases(self, relay: RelayCore, event_log: EventLog, store) -> None:
        session = _session(relay)
        other = _session(relay, "c2")
        await session.open()
        await other.open()
        await session.dispatch(ClientFrame(event="join", data={"room": "lobby", "peer": "alice"}))
        await other.dispatch(ClientFrame(event="join", data={"room": "lobby", "peer": "bob"}))
        other.connection.pending()

        await session.close("client namespace disconnect")
        await event_log.flush()

        assert session.state is SessionState.DISCONNECTED
        assert other.connection.pending() == [
            {"event": "event:disconnect", "data": {"room": "lobby", "peer": "alice", "peers": ["bob"]}},
        ]
        assert relay.presence.get("c1") is None
        assert relay.connections.get("c1") is None
        assert store.kinds("_general") == ["on:disconnect"]

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, relay: RelayCore, event_log: EventLog, store) -> None:
        session = _session(relay)
        await session.open()

        await session.close("transport close")
        await session.close("transport close")
        await event_log.flush()

        assert store.kinds("_general") == ["on:disconnecting", "event:disconnect", "on:disconnect"]

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, relay: RelayCore, event_log: EventLog, store) -> None:
        session = _session(relay)
        await session.open()
        await session.close("transport close")

        await session.dispatch(ClientFrame(event="join", data={"room": "lobby", "peer": "ghost"}))
        await event_log.flush()

        assert relay.rooms.members_of("lobby") == []
        assert store.records("lobby") == []


class TestWebSocketRateLimiter:
    """测试广播限流器。"""

    def test_disabled_when_interval_is_zero(self) -> None:
        limiter = WebSocketRateLimiter(interval_seconds=0.0)

        assert all(limiter.is_allowed("c1") for _ in range(5))

    def test_blocks_fast_messages(self) -> None:
        limiter = WebSocketRateLimiter(interval_seconds=60.0)

        assert limiter.is_allowed("c1") is True
        assert limiter.is_allowed("c1") is False
        assert limiter.is_allowed("c2") is True

        limiter.remove_client("c1")
        assert "c1" not in limiter._last_message_time
        assert limiter.is_allowed("c1") is True
