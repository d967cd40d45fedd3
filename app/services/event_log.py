"""
app.services.event_log
~~~~~~~~~~~~~~~~~~~~~~

房间事件日志 —— 把中继事件组装成日志记录，交给单个写入协程顺序落盘；
以及加入房间时的回放过滤。

写入是“发出即忘”的：``append`` 只把记录放进有界队列，不等待 I/O。
单一写入协程保证同一房间的行顺序与入队顺序一致、行与行不会交错。
队列满时按 ``overflow_policy`` 丢弃最旧或最新的记录并打警告。
"""
from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from app.core.config import OverflowPolicy
from app.core.logging import get_logger
from app.db.event_log_store import EventLogStore
from app.schemas.relay_events import EVENT_BROADCAST, EVENT_JOIN, LogKind, LogRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class _PendingLine:
    seq: int
    room: str
    line: str


class EventLog:
    """带有界写队列的房间事件日志。

    Attributes:
        store: 底层存储协作方。
        max_pending: 待写队列上限。
        overflow_policy: 队列满时的处理策略。
    """

    def __init__(
        self,
        store: EventLogStore,
        max_pending: int = 10000,
        overflow_policy: OverflowPolicy = "drop_oldest",
    ) -> None:
        self.store = store
        self.max_pending = max(1, max_pending)
        self.overflow_policy = overflow_policy
        self._queue: asyncio.Queue[_PendingLine] = asyncio.Queue(maxsize=self.max_pending)
        self._task: asyncio.Task[None] | None = None
        self._next_seq = 0
        # 最后一条成功入队的序号 / 已处理完的序号
        self._enqueued_seq = 0
        self._written_seq = 0
        self._waiters: list[tuple[int, asyncio.Future[None]]] = []

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """启动写入协程。"""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._writer_loop(), name="event-log-writer")

    async def stop(self) -> None:
        """写完队列中剩余的记录后停止写入协程。"""
        if self.running:
            await self.flush()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._drain()
        self._release_waiters(force=True)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── 写入 ──────────────────────────────────────────────────────────

    def append(
        self,
        room: str,
        conn_id: str,
        kind: LogKind,
        data: Any,
        peer: Any = None,
        addr: str = "",
    ) -> LogRecord:
        """组装一条日志记录并入队，不等待落盘。"""
        record = LogRecord(
            date=int(time.time() * 1000),
            room=room,
            id=conn_id,
            peer=peer,
            addr=addr,
            kind=kind,
            data=data,
        )
        self._next_seq += 1
        self._enqueue(_PendingLine(self._next_seq, room, record.model_dump_json()))
        return record

    def _enqueue(self, item: _PendingLine) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            if self.overflow_policy == "drop_new":
                logger.warning("日志队列已满，丢弃新记录 | room=%s", item.room)
                return
            dropped = self._queue.get_nowait()
            logger.warning("日志队列已满，丢弃最旧记录 | room=%s", dropped.room)
            self._queue.put_nowait(item)
        self._enqueued_seq = item.seq

    async def flush(self) -> None:
        """等待此刻之前入队的所有记录处理完毕。

        写入协程未运行时直接在当前协程中写完队列。
        """
        if not self.running:
            await self._drain()
            return

        target = self._enqueued_seq
        if self._written_seq >= target:
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append((target, fut))
        await fut

    async def _writer_loop(self) -> None:
        while True:
            item = await self._queue.get()
            await self._write(item)

    async def _drain(self) -> None:
        while not self._queue.empty():
            await self._write(self._queue.get_nowait())

    async def _write(self, item: _PendingLine) -> None:
        try:
            await self.store.append(item.room, item.line)
        except OSError as e:
            # 持久化失败不影响实时投递
            logger.error("日志写入失败: %s | line=%s", e, item.line)
        finally:
            self._written_seq = item.seq
            self._release_waiters()

    def _release_waiters(self, force: bool = False) -> None:
        remaining: list[tuple[int, asyncio.Future[None]]] = []
        for target, fut in self._waiters:
            if fut.done():
                continue
            if force or target <= self._written_seq:
                fut.set_result(None)
            else:
                remaining.append((target, fut))
        self._waiters = remaining

    # ── 读取 ──────────────────────────────────────────────────────────

    async def tail(self, room: str, count: int) -> list[str]:
        """读取房间日志末尾 ``count`` 行。"""
        return await self.store.read_last_lines(room, count)


def replay_events(lines: Iterable[str]) -> Iterator[tuple[str, dict[str, Any]]]:
    """从日志行中挑出可回放的广播事件。

    只保留 ``event:broadcast`` 记录，并把载荷的 ``is_live`` 置为 False。
    空行和无法解析的行直接跳过，顺序与文件顺序一致。

    Yields:
        ``(事件名, 载荷)``。
    """
    for line in lines:
        if not line.strip():
            continue
        try:
            record = LogRecord.model_validate_json(line)
        except ValidationError:
            logger.debug("跳过无法解析的日志行: %.80s", line)
            continue
        if record.kind != EVENT_BROADCAST or not isinstance(record.data, dict):
            continue
        data = dict(record.data)
        data["is_live"] = False
        yield record.kind, data


def lines_through_join(lines: list[str], room: str, conn_id: str) -> list[str] | None:
    """截取到某连接最近一次 ``event:join`` 记录（含）为止的日志行。

    加入之后才受理的广播已经实时送达加入者，不能再出现在回放里。
    从末尾向前找；找不到该记录时返回 None。
    """
    for i in range(len(lines) - 1, -1, -1):
        if not lines[i].strip():
            continue
        try:
            record = LogRecord.model_validate_json(lines[i])
        except ValidationError:
            continue
        if record.kind == EVENT_JOIN and record.id == conn_id and record.room == room:
            return lines[: i + 1]
    return None
