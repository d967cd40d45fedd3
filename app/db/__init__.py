"""
app.db.__init__
~~~~~~~~~~~~~~~

事件日志存储的生命周期管理。

启动时调用 ``open_store()`` 创建全局的 ``FileEventLogStore``，
关闭时调用 ``close_store()``。
"""
from __future__ import annotations

from pathlib import Path

from app.core.config import settings
from app.core.logging import get_logger
from app.db.event_log_store import FileEventLogStore

logger = get_logger(__name__)

_store: FileEventLogStore | None = None


def open_store(log_dir: str | None = None) -> FileEventLogStore:
    """初始化日志存储。应在 lifespan startup 中调用。"""
    global _store
    base_path = Path(log_dir or settings.LOG_DIR).resolve()
    try:
        base_path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        # 目录创建失败不阻止启动，追加时会再尝试并记录错误
        logger.error("日志目录创建失败: %s | dir=%s", e, base_path)
    _store = FileEventLogStore(base_path)
    logger.info("事件日志存储已就绪 | dir=%s", base_path)
    return _store


def close_store() -> None:
    """释放日志存储。应在 lifespan shutdown 中调用。"""
    global _store
    if _store is not None:
        _store = None
        logger.info("事件日志存储已关闭")

