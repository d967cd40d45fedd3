"""
app.db.event_log_store
~~~~~~~~~~~~~~~~~~~~~~

房间事件日志的文件存储 —— 每个房间一个只追加的文本文件，一行一条记录。

只提供两个能力：追加一行、读取末尾 N 行。文件和目录在首次追加时
惰性创建；读取不存在的文件视为空日志。
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import aiofiles

from app.core.logging import get_logger

logger = get_logger(__name__)

# 倒读文件时每次读取的块大小
_READ_CHUNK_SIZE = 8192


class EventLogStore(Protocol):
    """日志存储协作方需要满足的接口。"""

    async def append(self, room: str, line: str) -> None: ...

    async def read_last_lines(self, room: str, count: int) -> list[str]: ...


def log_file_name(room: str) -> str:
    """由房间名确定性地得到日志文件名。

    房间名做百分号编码，保证任何房间名都落在日志目录之内且互不冲突。
    """
    return f"log-{quote(room, safe='')}.txt"


class FileEventLogStore:
    """基于本地文件的日志存储。

    Attributes:
        base_path: 日志目录。
    """

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)

    def path_for(self, room: str) -> Path:
        return self.base_path / log_file_name(room)

    async def append(self, room: str, line: str) -> None:
        """向房间日志追加一行。

        整行（含换行符）以一次 ``write`` 写入追加模式打开的文件。

        Raises:
            OSError: 写入失败。
        """
        path = self.path_for(room)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = line if line.endswith("\n") else line + "\n"
        async with aiofiles.open(path, "a", encoding="utf-8") as f:
            await f.write(data)

    async def read_last_lines(self, room: str, count: int) -> list[str]:
        """读取房间日志的最后 ``count`` 行（文件顺序）。

        从文件末尾按块倒读，直到凑够 ``count`` 行或读到文件开头。

        Returns:
            行列表（不含换行符）；文件不存在时返回空列表。

        Raises:
            OSError: 读取失败（文件不存在除外）。
        """
        if count <= 0:
            return []

        path = self.path_for(room)
        try:
            async with aiofiles.open(path, "rb") as f:
                pos = await f.seek(0, os.SEEK_END)
                buf = b""
                # 需要 count + 1 个换行符才能确定最前面那行是完整的
                while pos > 0 and buf.count(b"\n") <= count:
                    step = min(_READ_CHUNK_SIZE, pos)
                    pos -= step
                    await f.seek(pos)
                    buf = await f.read(step) + buf
        except FileNotFoundError:
            logger.debug("日志文件不存在，视为空 | room=%s", room)
            return []

        lines = buf.decode("utf-8", errors="replace").splitlines()
        return lines[-count:]
