from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.websockets import WebSocketDisconnect, WebSocketState

from chatrelay import __version__
from chatrelay.config import settings
from chatrelay.errors import TransportError
from chatrelay.persistence.message_log import JsonlMessageLog
from chatrelay.protocol.types import CLOSE_NORMAL
from chatrelay.realtime.server import ChatServer
from chatrelay.security.auth import verify_token

logger = logging.getLogger(__name__)


class StarletteTransport:
    """Adapts a Starlette WebSocket to the recv/send/close transport shape."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def recv(self):
        try:
            message = await self.websocket.receive()
        except RuntimeError as e:
            raise TransportError(str(e)) from e
        if message["type"] == "websocket.disconnect":
            raise TransportError(f"client disconnected ({message.get('code')})")
        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes") or b""

    async def send(self, message: str) -> None:
        try:
            await self.websocket.send_text(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportError(str(e)) from e

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        if self.websocket.client_state == WebSocketState.DISCONNECTED:
            return
        await self.websocket.close(code, reason)


def create_app(chat: Optional[ChatServer] = None, store: Optional[JsonlMessageLog] = None) -> FastAPI:
    """Build the HTTP app. Pass ``chat``/``store`` to share state with a caller (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting chat relay...")
        app.state.store = store or JsonlMessageLog(settings.MESSAGE_LOG_PATH)
        app.state.chat = chat or ChatServer(store=app.state.store)
        yield
        # Shutdown
        logger.info("Shutting down chat relay...")
        await app.state.chat.router.drain()
        app.state.chat.registry.clear()

    app = FastAPI(
        title="Chat Relay",
        description="Real-time one-to-one chat over WebSockets",
        version=__version__,
        lifespan=lifespan,
    )

    security = HTTPBearer(auto_error=False)

    async def get_current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    ) -> Optional[str]:
        """Resolve the caller from a bearer token; anonymous unless REQUIRE_AUTH"""
        if credentials is None:
            if settings.REQUIRE_AUTH:
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="Not authenticated",
                    headers={"WWW-Authenticate": "Bearer"},
                )
            return None

        payload = verify_token(credentials.credentials)
        if payload is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )
        user_id = payload.get("user_id")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token carries no user",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return str(user_id)

    @app.get("/")
    async def root():
        return {"message": "Chat Relay", "version": __version__, "status": "running"}

    @app.get("/health")
    async def health_check(request: Request):
        chat: ChatServer = request.app.state.chat
        return {
            "status": "healthy",
            "connections": len(chat.registry),
            "online_users": len(chat.registry.online_users()),
        }

    @app.get("/api/messages/{user_a}/{user_b}")
    async def get_history(
        request: Request,
        user_a: str,
        user_b: str,
        limit: int = Query(50, ge=1, le=500),
        current_user: Optional[str] = Depends(get_current_user),
    ):
        """Chat history between two users, oldest first"""
        if current_user is not None and current_user not in (user_a, user_b):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You are not a participant in this conversation",
            )
        messages = await request.app.state.store.fetch_history(user_a, user_b, limit)
        return {"messages": messages}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time chat"""
        chat: ChatServer = websocket.app.state.chat
        await websocket.accept()
        identity = None
        try:
            identity = chat.identity.identify(str(websocket.url), websocket.headers)
        except Exception:
            logger.exception("identity provider failed")
        remote = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else None
        await chat.handle_transport(StarletteTransport(websocket), identity=identity, remote=remote)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(
        "chatrelay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )
