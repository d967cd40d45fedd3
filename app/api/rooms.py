"""
app.api.rooms
~~~~~~~~~~~~~

房间查询 REST 接口 —— 在线房间、成员快照、广播历史。

路由前缀 ``/api``，所有接口按客户端 IP 限流。

端点:
  - ``GET /rooms``                   → 获取有成员的房间列表
  - ``GET /rooms/{room}``            → 获取房间成员快照
  - ``GET /rooms/{room}/history``    → 获取房间最近的广播（非实时）
"""
from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import get_relay
from app.core.config import settings
from app.core.rate_limit import limiter
from app.schemas.api_response import ApiResponse
from app.schemas.relay_events import RoomHistoryData, RoomInfoData
from app.services.relay import RelayCore

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取在线房间列表")
@limiter.limit(settings.API_RATE_LIMIT)
async def list_rooms(
    request: Request,
    relay: RelayCore = Depends(get_relay),
) -> ApiResponse[list[RoomInfoData]]:
    """返回所有当前至少有一个成员的房间。"""
    rooms = await relay.list_rooms()
    return ApiResponse.ok(data=rooms)


@router.get("/rooms/{room}", summary="获取房间详情")
@limiter.limit(settings.API_RATE_LIMIT)
async def room_info(
    request: Request,
    room: str,
    relay: RelayCore = Depends(get_relay),
) -> ApiResponse[RoomInfoData]:
    """返回房间当前成员数与成员身份快照。房间无人时成员为空。

    Args:
        room: 房间名。
    """
    info = await relay.room_info(room)
    return ApiResponse.ok(data=info)


@router.get("/rooms/{room}/history", summary="获取房间广播历史")
@limiter.limit(settings.API_RATE_LIMIT)
async def room_history(
    request: Request,
    room: str,
    limit: int = Query(50, ge=1, le=500, description="读取日志末尾的最大行数"),
    relay: RelayCore = Depends(get_relay),
) -> ApiResponse[RoomHistoryData]:
    """读取房间日志末尾的广播记录（``is_live`` 均为 False）。

    读取行数与加入房间时的回放使用同一上限。

    Args:
        room: 房间名。
        limit: 读取日志末尾的最大行数。
    """
    messages = await relay.history(room, limit)
    return ApiResponse.ok(
        data=RoomHistoryData(room=room, messages=messages, total=len(messages)),
    )
