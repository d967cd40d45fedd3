"""
app.services.connection
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接管理器 —— 维护在线连接，提供单播与按成员列表扇出的能力。

每个连接持有一个有界发送队列和一个发送协程。``send`` 只入队、不等待
网络 I/O，因此中继核心可以在持锁状态下按顺序扇出，真正的发送在锁外完成。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Literal

from fastapi import WebSocket

from app.core.logging import get_logger

logger = get_logger(__name__)

SendOverflowPolicy = Literal["drop_oldest", "drop_new", "disconnect"]

# 队列满且策略为 disconnect 时使用的关闭码（Try Again Later）
_CLOSE_CODE_OVERLOADED = 1013


class Connection:
    """一条在线 WebSocket 连接。

    Attributes:
        id: 传输层分配的连接 ID，连接存活期间唯一。
        addr: 对端地址。
        websocket: 底层 WebSocket。
    """

    def __init__(
        self,
        conn_id: str,
        websocket: WebSocket,
        addr: str = "",
        queue_max: int = 256,
        overflow_policy: SendOverflowPolicy = "drop_oldest",
    ) -> None:
        self.id = conn_id
        self.addr = addr
        self.websocket = websocket
        self.overflow_policy = overflow_policy
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, queue_max))
        self._sender: asyncio.Task[None] | None = None
        self._closer: asyncio.Task[None] | None = None

    def start(self) -> None:
        """启动发送协程。"""
        if self._sender is None:
            self._sender = asyncio.create_task(self._sender_loop(), name=f"ws-sender-{self.id}")

    async def stop(self) -> None:
        """停止发送协程，未发出的帧直接丢弃；等待进行中的过载关闭结束。"""
        task, self._sender = self._sender, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        closer, self._closer = self._closer, None
        if closer is not None:
            await closer

    def send(self, event: str, data: dict[str, Any]) -> None:
        """把一帧放入发送队列。"""
        frame = {"event": event, "data": data}
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self._on_overflow(frame)

    def _on_overflow(self, frame: dict[str, Any]) -> None:
        if self.overflow_policy == "drop_new":
            logger.warning("发送队列已满，丢弃新消息 | conn=%s | event=%s", self.id, frame["event"])
            return
        if self.overflow_policy == "disconnect":
            logger.warning("发送队列已满，断开慢连接 | conn=%s", self.id)
            if self._closer is None:
                self._closer = asyncio.create_task(self._close_overloaded())
            return
        dropped = self._queue.get_nowait()
        logger.warning("发送队列已满，丢弃最旧消息 | conn=%s | event=%s", self.id, dropped["event"])
        self._queue.put_nowait(frame)

    async def _close_overloaded(self) -> None:
        try:
            await self.websocket.close(code=_CLOSE_CODE_OVERLOADED)
        except Exception as e:
            logger.debug("关闭慢连接失败: %s | conn=%s", e, self.id)

    async def _sender_loop(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                # 连接已断开，由接收循环负责清理
                logger.warning("消息发送失败: %s | conn=%s", e, self.id)

    def pending(self) -> list[dict[str, Any]]:
        """取出所有尚未发送的帧（发送协程未启动时使用）。"""
        frames: list[dict[str, Any]] = []
        while not self._queue.empty():
            frames.append(self._queue.get_nowait())
        return frames


class ConnectionManager:
    """在线连接登记表。

    Attributes:
        active_connections: 连接 ID → ``Connection``。
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, Connection] = {}

    def register(self, connection: Connection) -> None:
        self.active_connections[connection.id] = connection

    def unregister(self, conn_id: str) -> Connection | None:
        return self.active_connections.pop(conn_id, None)

    def get(self, conn_id: str) -> Connection | None:
        return self.active_connections.get(conn_id)

    def send_to(self, conn_id: str, event: str, data: dict[str, Any]) -> bool:
        """单播给一个连接。连接不在线时返回 False。"""
        connection = self.active_connections.get(conn_id)
        if connection is None:
            return False
        connection.send(event, data)
        return True

    def fan_out(self, conn_ids: Iterable[str], event: str, data: dict[str, Any]) -> int:
        """扇出给一组连接，返回实际投递的连接数。"""
        delivered = 0
        for conn_id in conn_ids:
            if self.send_to(conn_id, event, data):
                delivered += 1
        return delivered

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.active_connections)
