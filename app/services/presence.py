"""
app.services.presence
~~~~~~~~~~~~~~~~~~~~~

在线身份登记表 —— 连接 ID → 客户端最近一次自报的身份描述。

本类不加锁，调用方（``RelayCore``）负责串行化所有修改。
"""
from __future__ import annotations

from typing import Any


class PresenceRegistry:
    """连接身份登记表。

    ``get`` 对从未登记的连接返回 ``None``，调用方应把它当作“未知身份”，
    不要自行补造描述。条目只会被 ``remove`` 显式清除。
    """

    def __init__(self) -> None:
        self._peers: dict[str, Any] = {}

    def set(self, conn_id: str, peer: Any) -> None:
        """登记（或覆盖）连接的身份描述。"""
        self._peers[conn_id] = peer

    def get(self, conn_id: str) -> Any:
        return self._peers.get(conn_id)

    def remove(self, conn_id: str) -> None:
        self._peers.pop(conn_id, None)
