"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 内存版日志存储、未启动写入协程的 ``EventLog``、
以及基于 ``MagicMock`` WebSocket 的连接工厂，使中继核心可以脱离网络和磁盘测试。
"""
from __future__ import annotations

import asyncio
import json
import os
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("API_RATE_LIMIT", "1000/second")

from app.services.connection import Connection  # noqa: E402
from app.services.event_log import EventLog  # noqa: E402
from app.services.relay import RelayCore  # noqa: E402


class MemoryEventLogStore:
    """内存版日志存储，可模拟读写失败。"""

    def __init__(self) -> None:
        self.lines: dict[str, list[str]] = defaultdict(list)
        self.reads: list[tuple[str, int]] = []
        self.fail_append = False
        self.fail_read = False

    async def append(self, room: str, line: str) -> None:
        if self.fail_append:
            raise OSError("disk full")
        self.lines[room].append(line.rstrip("\n"))

    async def read_last_lines(self, room: str, count: int) -> list[str]:
        self.reads.append((room, count))
        if self.fail_read:
            raise OSError("read error")
        if count <= 0:
            return []
        return list(self.lines.get(room, [])[-count:])

    def records(self, room: str) -> list[dict[str, Any]]:
        return [json.loads(line) for line in self.lines.get(room, [])]

    def kinds(self, room: str) -> list[str]:
        return [record["kind"] for record in self.records(room)]


class SlowMemoryEventLogStore(MemoryEventLogStore):
    """每次读写都先等待一段时间，让写入协程与并发事件真正交错。"""

    def __init__(self, append_delay: float = 0.01, read_delay: float = 0.05) -> None:
        super().__init__()
        self.append_delay = append_delay
        self.read_delay = read_delay

    async def append(self, room: str, line: str) -> None:
        await asyncio.sleep(self.append_delay)
        await super().append(room, line)

    async def read_last_lines(self, room: str, count: int) -> list[str]:
        await asyncio.sleep(self.read_delay)
        return await super().read_last_lines(room, count)


@pytest.fixture()
def store() -> MemoryEventLogStore:
    return MemoryEventLogStore()


@pytest.fixture()
def slow_store() -> SlowMemoryEventLogStore:
    return SlowMemoryEventLogStore()


@pytest.fixture()
def event_log(store: MemoryEventLogStore) -> EventLog:
    """写入协程未启动：``flush()`` 会在当前协程里直接写完队列。"""
    return EventLog(store)


@pytest.fixture()
def relay(event_log: EventLog) -> RelayCore:
    return RelayCore(event_log)


@pytest.fixture()
def connect(relay: RelayCore) -> Callable[..., Awaitable[Connection]]:
    """返回一个协程工厂：创建连接并登记到中继核心。

    发送协程不启动，下行帧留在队列里，用 ``connection.pending()`` 取出检查。
    """

    async def _connect(conn_id: str, addr: str = "127.0.0.1") -> Connection:
        connection = Connection(conn_id, MagicMock(), addr=addr)
        await relay.connect(connection)
        return connection

    return _connect
