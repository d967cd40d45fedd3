"""
app.schemas.relay_events
~~~~~~~~~~~~~~~~~~~~~~~~

房间中继的 Pydantic 模型：上行客户端事件、下行服务端事件、持久化日志记录。

线路格式统一为具名事件 + 载荷::

    {"event": "join", "data": {"room": "lobby", "peer": {...}, "max_log_entries": 10}}
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

# 日志记录类型
LogKind = Literal[
    "on:join",
    "event:join",
    "on:broadcast",
    "event:broadcast",
    "on:leave",
    "on:disconnecting",
    "event:disconnect",
    "on:disconnect",
    "on:error",
]

EVENT_JOIN = "event:join"
EVENT_BROADCAST = "event:broadcast"
EVENT_DISCONNECT = "event:disconnect"


# ── 帧 ────────────────────────────────────────────────────────────────

class ClientFrame(BaseModel):
    """客户端发来的一帧：事件名 + 原始载荷（载荷按事件名再校验）。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: dict[str, Any] = Field(default_factory=dict, description="事件载荷")


# ── 上行事件 ──────────────────────────────────────────────────────────

class JoinRequest(BaseModel):
    """``join`` 事件载荷。"""

    room: str = Field(..., min_length=1, description="房间名")
    peer: Any = Field(default=None, description="客户端自报的身份描述（原样保存与回显）")
    max_log_entries: int = Field(default=0, description="希望回放的最近日志行数")


class LeaveRequest(BaseModel):
    """``leave`` 事件载荷。"""

    room: str = Field(..., min_length=1, description="房间名")


class BroadcastRequest(BaseModel):
    """``broadcast`` 事件载荷。"""

    room: str = Field(..., min_length=1, description="房间名")
    msg: Any = Field(default=None, description="广播内容")


# ── 下行事件 ──────────────────────────────────────────────────────────

class PresenceEvent(BaseModel):
    """``event:join`` / ``event:disconnect`` 载荷：触发者 + 房间在线快照。"""

    room: str
    peer: Any = None
    peers: list[Any] = Field(default_factory=list)


class BroadcastEvent(BaseModel):
    """``event:broadcast`` 载荷。回放时 ``is_live`` 为 False。"""

    room: str
    msg: Any = None
    peer: Any = None
    is_live: bool = True


# ── 持久化 ────────────────────────────────────────────────────────────

class LogRecord(BaseModel):
    """事件日志中的一行。"""

    date: int = Field(..., description="毫秒级 Unix 时间戳")
    room: str
    id: str = Field(..., description="连接 ID")
    peer: Any = None
    addr: str = ""
    kind: LogKind
    data: Any = None


# ── REST ──────────────────────────────────────────────────────────────

class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room: str = Field(..., description="房间名")
    online_count: int = Field(..., description="当前成员数")
    peers: list[Any] = Field(default_factory=list, description="当前成员身份快照")


class RoomHistoryData(BaseModel):
    """房间广播历史（非实时）。"""

    room: str = Field(..., description="房间名")
    messages: list[BroadcastEvent] = Field(..., description="按日志顺序排列的广播")
    total: int = Field(..., description="本次返回条数")
