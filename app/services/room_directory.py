"""
app.services.room_directory
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间目录 —— 维护 房间 ↔ 连接 的多对多成员关系。

房间在第一次 ``join`` 时隐式创建，最后一个成员离开后从目录中消失
（房间日志文件不受影响）。同时维护反向索引，断开连接时可以直接
枚举该连接所在的全部房间。
"""
from __future__ import annotations


class RoomDirectory:
    """房间成员目录。

    成员集合用 ``dict`` 充当有序集合，枚举顺序即加入顺序。
    本类不加锁，调用方（``RelayCore``）负责串行化所有修改。
    """

    def __init__(self) -> None:
        self._members: dict[str, dict[str, None]] = {}
        self._rooms_by_conn: dict[str, dict[str, None]] = {}

    def join(self, room: str, conn_id: str) -> bool:
        """把连接加入房间。

        Returns:
            是否为新加入；已在房间内时返回 False（幂等）。
        """
        members = self._members.setdefault(room, {})
        if conn_id in members:
            return False
        members[conn_id] = None
        self._rooms_by_conn.setdefault(conn_id, {})[room] = None
        return True

    def leave(self, room: str, conn_id: str) -> bool:
        """把连接移出房间。

        Returns:
            是否真的移除了成员；不在房间内时返回 False（幂等）。
        """
        members = self._members.get(room)
        if members is None or conn_id not in members:
            return False

        del members[conn_id]
        if not members:
            del self._members[room]

        rooms = self._rooms_by_conn.get(conn_id)
        if rooms is not None:
            rooms.pop(room, None)
            if not rooms:
                del self._rooms_by_conn[conn_id]
        return True

    def leave_all(self, conn_id: str) -> list[str]:
        """把连接移出所有房间，返回被移出的房间列表。"""
        rooms = self.rooms_of(conn_id)
        for room in rooms:
            self.leave(room, conn_id)
        return rooms

    def members_of(self, room: str) -> list[str]:
        """房间当前成员（加入顺序）。房间不存在时返回空列表。"""
        return list(self._members.get(room, ()))

    def rooms_of(self, conn_id: str) -> list[str]:
        """连接当前所在的房间（加入顺序）。"""
        return list(self._rooms_by_conn.get(conn_id, ()))

    def rooms(self) -> list[str]:
        """所有至少有一个成员的房间。"""
        return list(self._members)

    def is_member(self, room: str, conn_id: str) -> bool:
        return conn_id in self._members.get(room, ())
