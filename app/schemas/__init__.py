"""
app.schemas
~~~~~~~~~~~
房间中继的 Pydantic 模型。
"""
from app.schemas.api_response import ApiResponse
from app.schemas.relay_events import (
    BroadcastEvent,
    BroadcastRequest,
    ClientFrame,
    JoinRequest,
    LeaveRequest,
    LogRecord,
    PresenceEvent,
    RoomHistoryData,
    RoomInfoData,
)

# 泛型模型的前向引用需要在导入后显式解析
ApiResponse.model_rebuild()
