"""
app.api.ws
~~~~~~~~~~

WebSocket 中继接口。

提供 ``/ws`` 端点。每条连接对应一个 ``Session``，上行帧按到达顺序
逐条交给会话处理。

帧协议（JSON 文本）:
  - 上行 ``{"event": "join", "data": {"room", "peer", "max_log_entries"}}``
  - 上行 ``{"event": "broadcast", "data": {"room", "msg"}}``
  - 下行 ``{"event": "event:join" | "event:broadcast" | "event:disconnect", "data": {...}}``
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.config import settings
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.services.connection import Connection
from app.services.relay import RelayCore
from app.services.session import Session

logger = get_logger(__name__)

router: APIRouter = APIRouter()

# 跨域来源不被允许时的关闭码（Policy Violation）
_CLOSE_CODE_POLICY = 1008


def _origin_allowed(websocket: WebSocket) -> bool:
    """按 ``CORS_ORIGINS`` 校验握手请求的 Origin。"""
    if settings.allow_cors_all_origins:
        return True
    origin = websocket.headers.get("origin")
    return origin is None or origin in settings.CORS_ORIGINS


def _remote_addr(websocket: WebSocket) -> str:
    return websocket.client.host if websocket.client else ""


def _disconnect_reason(code: int) -> str:
    if code in (1000, 1001):
        return "client namespace disconnect"
    return f"transport close ({code})"


async def _receive_text(websocket: WebSocket) -> str:
    """接收一帧并统一成文本；二进制帧按 UTF-8 解码。"""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    text = message.get("text")
    if text is not None:
        return text
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


@router.websocket("/ws")
async def websocket_relay_endpoint(websocket: WebSocket) -> None:
    """WebSocket 房间中继端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    conn_id = uuid.uuid4().hex
    token = request_id_ctx_var.set(conn_id)

    try:
        if not _origin_allowed(websocket):
            logger.warning("拒绝跨域连接 | origin=%s", websocket.headers.get("origin"))
            await websocket.close(code=_CLOSE_CODE_POLICY)
            return

        relay: RelayCore = websocket.app.state.relay
        await websocket.accept()

        connection = Connection(
            conn_id,
            websocket,
            addr=_remote_addr(websocket),
            queue_max=settings.WS_SEND_QUEUE_MAX,
            overflow_policy=settings.WS_SEND_OVERFLOW_POLICY,
        )
        connection.start()
        session = Session(
            relay,
            connection,
            rate_limiter=WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL),
        )
        await session.open()

        reason = "transport close"
        try:
            while True:
                text = await _receive_text(websocket)
                await session.dispatch_text(text)
        except WebSocketDisconnect as e:
            reason = _disconnect_reason(e.code)
        except Exception as e:
            logger.error("WebSocket 接收异常: %s", e, exc_info=True)
            await session.on_error(e)
            reason = "transport error"
        finally:
            await session.close(reason)
            await connection.stop()
    finally:
        request_id_ctx_var.reset(token)
