"""
app.services.session
~~~~~~~~~~~~~~~~~~~~

连接会话 —— 每条在线连接一个，把上行事件分派到 ``RelayCore``。

状态流转::

    CONNECTED ──(join / leave / broadcast)──> CONNECTED ──close()──> DISCONNECTING ──> DISCONNECTED

处理过程中的任何异常都在会话边界被捕获并转交 ``RelayCore.error``，
不会中断连接，也不会以错误事件的形式回给客户端。
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from pydantic import ValidationError

from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.schemas.relay_events import BroadcastRequest, ClientFrame, JoinRequest, LeaveRequest
from app.services.connection import Connection
from app.services.relay import NotInRoomError, RelayCore

logger = get_logger(__name__)


class SessionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"


class UnknownEventError(ValueError):
    """客户端发来了未定义的事件名。"""

    def __init__(self, event: str) -> None:
        super().__init__(f"unknown event {event!r}")
        self.event = event


class Session:
    """单条连接的会话。

    Attributes:
        relay: 共享的中继核心。
        connection: 本会话的连接。
        rate_limiter: 广播限流器。
        state: 当前状态。
    """

    def __init__(
        self,
        relay: RelayCore,
        connection: Connection,
        rate_limiter: WebSocketRateLimiter | None = None,
    ) -> None:
        self.relay = relay
        self.connection = connection
        self.rate_limiter = rate_limiter or WebSocketRateLimiter()
        self.state = SessionState.CONNECTED
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "join": self._on_join,
            "broadcast": self._on_broadcast,
            "leave": self._on_leave,
        }

    @property
    def id(self) -> str:
        return self.connection.id

    @property
    def rooms(self) -> list[str]:
        """本会话当前所在的房间。"""
        return self.relay.rooms.rooms_of(self.id)

    async def open(self) -> None:
        """向中继核心登记本连接。"""
        await self.relay.connect(self.connection)

    # ── 上行分派 ──────────────────────────────────────────────────────

    async def dispatch_text(self, text: str) -> None:
        """解析一帧 JSON 文本并分派。解析失败按传输错误处理。"""
        try:
            frame = ClientFrame.model_validate_json(text)
        except ValidationError as e:
            logger.info("无法解析的上行帧 | conn=%s", self.id)
            await self.on_error(e)
            return
        await self.dispatch(frame)

    async def dispatch(self, frame: ClientFrame) -> None:
        """按事件名把一帧交给对应的处理函数。"""
        if self.state is not SessionState.CONNECTED:
            logger.debug("会话已关闭，忽略事件 | conn=%s | event=%s", self.id, frame.event)
            return

        handler = self._handlers.get(frame.event)
        if handler is None:
            await self.on_error(UnknownEventError(frame.event))
            return

        try:
            await handler(frame.data)
        except (ValidationError, NotInRoomError) as e:
            logger.info("事件被拒绝 | conn=%s | event=%s", self.id, frame.event)
            await self.on_error(e)
        except Exception as e:
            logger.error("事件处理异常: %s | conn=%s | event=%s", e, self.id, frame.event, exc_info=True)
            await self.on_error(e)

    async def _on_join(self, data: dict[str, Any]) -> None:
        await self.relay.join(self.id, JoinRequest.model_validate(data))

    async def _on_broadcast(self, data: dict[str, Any]) -> None:
        request = BroadcastRequest.model_validate(data)
        if not self.rate_limiter.is_allowed(self.id):
            logger.info("广播过快，已丢弃 | conn=%s | room=%s", self.id, request.room)
            return
        await self.relay.broadcast(self.id, request)

    async def _on_leave(self, data: dict[str, Any]) -> None:
        await self.relay.leave(self.id, LeaveRequest.model_validate(data))

    async def on_error(self, err: Any) -> None:
        await self.relay.error(self.id, err)

    # ── 关闭 ──────────────────────────────────────────────────────────

    async def close(self, reason: str) -> None:
        """关闭会话：先通知各房间，再做最终清理。重复调用无副作用。"""
        if self.state is not SessionState.CONNECTED:
            return

        self.state = SessionState.DISCONNECTING
        try:
            await self.relay.disconnecting(self.id, reason)
        finally:
            await self.relay.disconnect(self.id)
            self.rate_limiter.remove_client(self.id)
            self.state = SessionState.DISCONNECTED
