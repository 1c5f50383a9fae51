from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from relay_core.api.service import ChatService, get_default_service
from relay_core.domain.exceptions import BusinessError, TransportLost
from relay_core.infrastructure.logging.logger import logger
from relay_core.relay.manager import ConnectionManager


class ChatBody(BaseModel):
    message: Optional[str] = Field(default=None, description="用户最新一条消息")
    userId: Optional[str] = Field(default=None, description="会话身份；缺省时由服务端生成")


class ClearBody(BaseModel):
    userId: Optional[str] = Field(default=None, description="要清空的会话身份")


class WebSocketConnection:
    """把 Starlette WebSocket 适配为中继的 Connection 协议。"""

    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    async def receive_text(self) -> str:
        try:
            return await self._ws.receive_text()
        except WebSocketDisconnect as e:
            raise TransportLost(message="Client disconnected", details=f"code={e.code}")

    async def send_text(self, data: str) -> None:
        try:
            await self._ws.send_text(data)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportLost(message="Client disconnected", details=str(e))


def create_app(service: Optional[ChatService] = None) -> FastAPI:
    chat_service = service or get_default_service()
    manager = ConnectionManager(store=chat_service.store, provider=chat_service.provider, model=chat_service.model)

    app = FastAPI(title="Streaming Chat Relay", version="0.1.0")
    app.state.chat_service = chat_service
    app.state.connection_manager = manager

    @app.exception_handler(BusinessError)
    async def business_error_handler(request: Request, exc: BusinessError) -> JSONResponse:
        logger.warning(
            "Request failed: %s",
            exc.code,
            extra={"extra": {"path": request.url.path, "code": exc.code, "details": exc.details}},
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    @app.post("/api/chat")
    async def chat(body: ChatBody) -> Dict[str, Any]:
        return await chat_service.chat(body.message, body.userId)

    @app.get("/api/history")
    async def history(userId: Optional[str] = None) -> Dict[str, Any]:
        return await chat_service.history(userId)

    @app.post("/api/clear")
    async def clear(body: ClearBody) -> Dict[str, Any]:
        return await chat_service.clear(body.userId)

    @app.websocket("/api/ws")
    async def relay_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        logger.info("WebSocket connection requested")
        await manager.serve(WebSocketConnection(websocket))

    @app.get("/health")
    def health():
        return {"status": "ok", "active_sessions": len(manager.active_sessions())}

    return app
