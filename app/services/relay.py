"""
app.services.relay
~~~~~~~~~~~~~~~~~~

房间中继核心 —— 处理 连接 / 加入 / 广播 / 断开 / 错误 事件。

共享状态（``PresenceRegistry``、``RoomDirectory``）只在 ``_lock`` 内修改。
持锁期间只做内存操作：日志记录和下行消息都只是入队，真正的磁盘写入
与网络发送在锁外由各自的协程完成。因此同一房间内扇出与日志的顺序
严格等于事件被受理的顺序。
"""
from __future__ import annotations

import asyncio
from typing import Any

from pydantic import ValidationError

from app.core.logging import get_logger
from app.schemas.relay_events import (
    EVENT_BROADCAST,
    EVENT_DISCONNECT,
    EVENT_JOIN,
    BroadcastEvent,
    BroadcastRequest,
    JoinRequest,
    LeaveRequest,
    LogKind,
    PresenceEvent,
    RoomInfoData,
)
from app.services.connection import Connection, ConnectionManager
from app.services.event_log import EventLog, lines_through_join, replay_events
from app.services.presence import PresenceRegistry
from app.services.room_directory import RoomDirectory

logger = get_logger(__name__)

DEFAULT_ROOM = "_general"
REPLAY_MAX_ENTRIES = 50
# 回放窗口被并发写入挤出时，最多多读几倍的行数
REPLAY_OVERSCAN = 8


def error_payload(err: Any) -> dict[str, Any]:
    """把错误对象转成可写入日志的载荷。"""
    if isinstance(err, BaseException):
        return {"type": type(err).__name__, "message": str(err)}
    if isinstance(err, dict):
        return err
    return {"message": str(err)}


class NotInRoomError(ValueError):
    """连接不在要离开的房间里。"""

    def __init__(self, room: str) -> None:
        super().__init__(f"not in room {room!r}")
        self.room = room


class RelayCore:
    """房间中继核心（每个进程一个）。

    - ``connect(connection)``               → 登记连接
    - ``join(conn_id, request)``            → 加入房间、广播在线快照、私发回放
    - ``broadcast(conn_id, request)``       → 向房间所有成员扇出消息
    - ``leave(conn_id, request)``           → 离开单个房间并通知剩余成员
    - ``disconnecting(conn_id, reason)``    → 逐个房间通知离开
    - ``disconnect(conn_id)``               → 最终清理
    - ``error(conn_id, err)``               → 记录错误，不改变状态

    Attributes:
        event_log: 房间事件日志。
        connections: 在线连接登记表（传输层扇出能力）。
        presence: 连接身份登记表。
        rooms: 房间成员目录。
        default_room: 无房间可归属时使用的默认房间。
        replay_max_entries: 回放行数上限。
    """

    def __init__(
        self,
        event_log: EventLog,
        connections: ConnectionManager | None = None,
        default_room: str = DEFAULT_ROOM,
        replay_max_entries: int = REPLAY_MAX_ENTRIES,
    ) -> None:
        self.event_log = event_log
        self.connections = connections or ConnectionManager()
        self.presence = PresenceRegistry()
        self.rooms = RoomDirectory()
        self.default_room = default_room
        self.replay_max_entries = replay_max_entries
        self._lock = asyncio.Lock()

    # ── 内部工具（调用方需持锁）──────────────────────────────────────

    def _log(self, room: str, conn_id: str, kind: LogKind, data: Any) -> None:
        connection = self.connections.get(conn_id)
        self.event_log.append(
            room,
            conn_id,
            kind,
            data,
            peer=self.presence.get(conn_id),
            addr=connection.addr if connection else "",
        )

    def _snapshot(self, room: str) -> list[Any]:
        """房间在线快照：按成员枚举顺序列出每个成员的身份描述。"""
        return [self.presence.get(member) for member in self.rooms.members_of(room)]

    def _fan_out(self, room: str, event: str, data: dict[str, Any]) -> None:
        delivered = self.connections.fan_out(self.rooms.members_of(room), event, data)
        logger.debug("扇出 | room=%s | event=%s | 投递: %d", room, event, delivered)

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def connect(self, connection: Connection) -> None:
        """登记新连接，此时尚未加入任何房间。"""
        async with self._lock:
            self.connections.register(connection)
        logger.info(
            "连接已登记 | conn=%s | addr=%s | 在线: %d",
            connection.id, connection.addr, self.connections.online_count,
        )

    async def join(self, conn_id: str, request: JoinRequest) -> PresenceEvent:
        """加入房间。

        登记身份 → 加入成员 → 向房间全员（含自己）扇出 ``event:join`` →
        把房间日志末尾的广播私发给加入者。

        Returns:
            扇出的 ``event:join`` 载荷。
        """
        room = request.room
        async with self._lock:
            self._log(room, conn_id, "on:join", request.model_dump())
            self.presence.set(conn_id, request.peer)
            self.rooms.join(room, conn_id)

            out = PresenceEvent(
                room=room,
                peer=self.presence.get(conn_id),
                peers=self._snapshot(room),
            )
            payload = out.model_dump()
            self._log(room, conn_id, "event:join", payload)
            self._fan_out(room, EVENT_JOIN, payload)

        replayed = await self.replay(conn_id, room, request.max_log_entries)
        logger.debug("加入房间 | conn=%s | room=%s | 回放: %d", conn_id, room, replayed)
        return out

    async def replay(self, conn_id: str, room: str, max_log_entries: int) -> int:
        """把房间日志末尾的广播以非实时形式私发给一个连接。

        窗口为截至加入者自己的 ``event:join`` 记录的最后
        ``min(max_log_entries, replay_max_entries)`` 行。读取失败时
        放弃回放，不影响已经完成的加入流程。

        Returns:
            回放的事件数。
        """
        limit = min(max_log_entries, self.replay_max_entries)
        if limit <= 0:
            return 0

        try:
            # 保证此前受理的事件都已落盘，回放窗口才完整
            await self.event_log.flush()
            window = await self._read_window(conn_id, room, limit)
        except OSError as e:
            logger.warning("日志读取失败，跳过回放: %s | room=%s", e, room)
            return 0
        if window is None:
            logger.debug("日志中找不到加入记录，跳过回放 | conn=%s | room=%s", conn_id, room)
            return 0

        replayed = 0
        for kind, data in replay_events(window[-limit:]):
            if not self.connections.send_to(conn_id, kind, data):
                break
            replayed += 1
        return replayed

    async def _read_window(self, conn_id: str, room: str, limit: int) -> list[str] | None:
        """读取以加入者 ``event:join`` 结尾的日志行。

        锁释放后到读取完成之间，房间里可能又写入了新的记录，
        因此按需扩大读取行数，直到窗口里出现加入记录。
        """
        count = limit
        max_count = limit * REPLAY_OVERSCAN
        while True:
            lines = await self.event_log.tail(room, count)
            window = lines_through_join(lines, room, conn_id)
            if window is not None or len(lines) < count or count >= max_count:
                return window
            count = min(count * 2, max_count)

    async def broadcast(self, conn_id: str, request: BroadcastRequest) -> BroadcastEvent:
        """向房间全员（含发送者）扇出一条实时广播。

        不检查发送者是否为房间成员。
        """
        room = request.room
        async with self._lock:
            self._log(room, conn_id, "on:broadcast", request.model_dump())
            out = BroadcastEvent(
                room=room,
                msg=request.msg,
                peer=self.presence.get(conn_id),
                is_live=True,
            )
            payload = out.model_dump()
            self._log(room, conn_id, EVENT_BROADCAST, payload)
            self._fan_out(room, EVENT_BROADCAST, payload)
        return out

    async def leave(self, conn_id: str, request: LeaveRequest) -> PresenceEvent:
        """离开单个房间：移出成员，向剩余成员扇出 ``event:disconnect``。

        连接的身份描述保留，其他房间不受影响。

        Raises:
            NotInRoomError: 连接不在该房间。
        """
        room = request.room
        async with self._lock:
            if not self.rooms.is_member(room, conn_id):
                raise NotInRoomError(room)
            self._log(room, conn_id, "on:leave", request.model_dump())
            self.rooms.leave(room, conn_id)

            out = PresenceEvent(room=room, peer=self.presence.get(conn_id), peers=self._snapshot(room))
            payload = out.model_dump()
            self._log(room, conn_id, "event:disconnect", payload)
            self._fan_out(room, EVENT_DISCONNECT, payload)

        logger.info("离开房间 | conn=%s | room=%s", conn_id, room)
        return out

    async def disconnecting(self, conn_id: str, reason: str) -> list[str]:
        """断开前的通知阶段：逐个房间移出成员并通知剩余成员。

        连接不在任何房间时，通知落到默认房间。

        Returns:
            发出了 ``event:disconnect`` 的房间列表。
        """
        async with self._lock:
            rooms = self.rooms.rooms_of(conn_id) or [self.default_room]
            peer = self.presence.get(conn_id)
            for room in rooms:
                self._log(room, conn_id, "on:disconnecting", {"reason": reason})
                self.rooms.leave(room, conn_id)

                out = PresenceEvent(room=room, peer=peer, peers=self._snapshot(room))
                payload = out.model_dump()
                self._log(room, conn_id, "event:disconnect", payload)
                self._fan_out(room, EVENT_DISCONNECT, payload)

        logger.info("连接断开中 | conn=%s | reason=%s | rooms=%s", conn_id, reason, rooms)
        return rooms

    async def disconnect(self, conn_id: str) -> None:
        """最终清理：清除身份、残留成员关系并注销连接。"""
        async with self._lock:
            self._log(self.default_room, conn_id, "on:disconnect", {})
            self.presence.remove(conn_id)
            self.rooms.leave_all(conn_id)
            self.connections.unregister(conn_id)
        logger.info("连接已注销 | conn=%s | 在线: %d", conn_id, self.connections.online_count)

    async def error(self, conn_id: str, err: Any) -> None:
        """记录连接上的错误。不改变任何状态。"""
        payload = error_payload(err)
        async with self._lock:
            self._log(self.default_room, conn_id, "on:error", payload)
        logger.warning("连接错误 | conn=%s | %s", conn_id, payload)

    # ── 查询 ──────────────────────────────────────────────────────────

    async def room_info(self, room: str) -> RoomInfoData:
        """房间当前成员数与在线快照。"""
        async with self._lock:
            peers = self._snapshot(room)
        return RoomInfoData(room=room, online_count=len(peers), peers=peers)

    async def list_rooms(self) -> list[RoomInfoData]:
        """所有有成员的房间摘要。"""
        async with self._lock:
            snapshots = {room: self._snapshot(room) for room in self.rooms.rooms()}
        return [
            RoomInfoData(room=room, online_count=len(peers), peers=peers)
            for room, peers in snapshots.items()
        ]

    async def history(self, room: str, limit: int) -> list[BroadcastEvent]:
        """读取房间日志末尾的广播（非实时），规则与加入时的回放一致。"""
        limit = min(limit, self.replay_max_entries)
        if limit <= 0:
            return []
        try:
            await self.event_log.flush()
            lines = await self.event_log.tail(room, limit)
        except OSError as e:
            logger.warning("日志读取失败: %s | room=%s", e, room)
            return []
        messages: list[BroadcastEvent] = []
        for _, data in replay_events(lines):
            try:
                messages.append(BroadcastEvent.model_validate(data))
            except ValidationError:
                logger.debug("跳过字段不完整的广播记录 | room=%s", room)
        return messages
