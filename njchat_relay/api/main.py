import re
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ..core.config_manager import ConfigManager
from ..core.error_handling import ErrorContext, ErrorHandler
from ..core.exceptions import ChatNotFoundError, MessageNotFoundError
from ..core.logging import logger
from ..services.model_service import ModelService
from ..services.relay.chat_relay_service import ChatRelayService
from ..services.relay.relay_session import RelaySession
from ..services.title_service import TitleService
from ..storage.conversation_store import ConversationStore
from .middleware import DEFAULT_USER_ID, RequestLoggerMiddleware

_SAFE_USER_ID = re.compile(r"^[\w-]+$")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def get_user_id(request: Request, x_user_id: Optional[str] = Header(None)) -> str:
    user_id = x_user_id or DEFAULT_USER_ID
    if not _SAFE_USER_ID.match(user_id):
        context = ErrorContext(request_id=getattr(request.state, "request_id", None))
        raise ErrorHandler.handle_invalid_request("X-User-Id may only contain letters, digits, '_' and '-'", context)
    return user_id


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Request JSON object; an empty body counts as {}."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        context = ErrorContext(request_id=getattr(request.state, "request_id", None))
        raise ErrorHandler.handle_invalid_request(str(e), context)
    if not isinstance(body, dict):
        context = ErrorContext(request_id=getattr(request.state, "request_id", None))
        raise ErrorHandler.handle_invalid_request("body must be a JSON object", context)
    return body


async def stream_session(session: RelaySession) -> AsyncIterator[bytes]:
    async for event in session.run():
        yield event.to_sse()


def create_app(config_manager: Optional[ConfigManager] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None) -> FastAPI:
    """
    Build the relay application.

    transport replaces the network transport of the shared httpx client
    (tests plug in httpx.MockTransport here).
    """
    app = FastAPI(title="NJ-Chat relay")
    app.state.config_manager = config_manager or ConfigManager()

    @app.on_event("startup")
    async def startup_event():
        config = app.state.config_manager
        config.start_reloader_task()

        app.state.httpx_client = httpx.AsyncClient(transport=transport) if transport else httpx.AsyncClient()
        app.state.store = ConversationStore(config.data_dir)
        app.state.title_service = TitleService(app.state.store)
        app.state.model_service = ModelService(config, app.state.httpx_client)
        app.state.chat_relay_service = ChatRelayService(
            config, app.state.httpx_client, app.state.store, app.state.title_service
        )
        logger.info("Relay started", data_dir=config.data_dir, default_provider=config.default_provider)

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.config_manager.stop_reloader_task()
        await app.state.title_service.wait_idle()
        await app.state.httpx_client.aclose()

    app.add_middleware(RequestLoggerMiddleware)

    @app.exception_handler(OSError)
    async def storage_error_handler(request: Request, exc: OSError):
        """Disk failures in the conversation store surface as a 500 with the usual error body."""
        context = ErrorContext(request_id=getattr(request.state, "request_id", None))
        http_exc = ErrorHandler.handle_internal_server_error(str(exc), context, original_exception=exc)
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    def _context(request: Request, user_id: str, **kwargs) -> ErrorContext:
        return ErrorContext(request_id=getattr(request.state, "request_id", None), user_id=user_id, **kwargs)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    # -- models -----------------------------------------------------------

    @app.get("/api/models")
    async def list_models(request: Request, provider: Optional[str] = None,
                          user_id: str = Depends(get_user_id)):
        models = await app.state.model_service.list_models(
            provider, request_id=getattr(request.state, "request_id", None),
            user_settings=app.state.store.get_user_settings(user_id),
        )
        return {"models": models}

    @app.post("/api/models/test")
    async def test_models(request: Request, user_id: str = Depends(get_user_id)):
        """Probe a backend with unsaved connection details."""
        body = await read_json_body(request)
        overrides = {"base_url": body.get("baseUrl"), "api_key": body.get("apiKey")}
        models = await app.state.model_service.list_models(
            body.get("provider"), overrides=overrides,
            request_id=getattr(request.state, "request_id", None),
            user_settings=app.state.store.get_user_settings(user_id),
        )
        return {"ok": True, "models": models}

    # -- settings ---------------------------------------------------------

    @app.get("/api/settings")
    async def get_settings(user_id: str = Depends(get_user_id)):
        return {"settings": app.state.store.get_user_settings(user_id)}

    @app.post("/api/settings")
    async def update_settings(request: Request, user_id: str = Depends(get_user_id)):
        body = await read_json_body(request)
        return {"settings": app.state.store.update_user_settings(user_id, body)}

    # -- chats ------------------------------------------------------------

    @app.get("/api/chats")
    async def list_chats(user_id: str = Depends(get_user_id)):
        return {"chats": app.state.store.list_chats(user_id)}

    @app.post("/api/chats")
    async def create_chat(request: Request, user_id: str = Depends(get_user_id)):
        body = await read_json_body(request)
        chat = app.state.store.create_chat(
            user_id,
            title=body.get("title") or "",
            model=body.get("model") or "",
            system=body.get("system") or "",
            folder=body.get("folder") or "",
            pinned=bool(body.get("pinned")),
        )
        return {"chat": chat}

    @app.get("/api/chats/{chat_id}")
    async def get_chat(chat_id: str, request: Request, user_id: str = Depends(get_user_id)):
        chat = app.state.store.get_chat(user_id, chat_id)
        if chat is None:
            raise ErrorHandler.handle_chat_not_found(chat_id, _context(request, user_id))
        return {"chat": chat}

    @app.patch("/api/chats/{chat_id}")
    async def update_chat(chat_id: str, request: Request, user_id: str = Depends(get_user_id)):
        body = await read_json_body(request)
        try:
            chat = app.state.store.update_chat_meta(user_id, chat_id, body)
        except ChatNotFoundError:
            raise ErrorHandler.handle_chat_not_found(chat_id, _context(request, user_id))
        return {"chat": chat}

    @app.delete("/api/chats/{chat_id}")
    async def delete_chat(chat_id: str, request: Request, user_id: str = Depends(get_user_id)):
        if not app.state.store.delete_chat(user_id, chat_id):
            raise ErrorHandler.handle_chat_not_found(chat_id, _context(request, user_id))
        return {"ok": True}

    # -- messages ---------------------------------------------------------

    @app.post("/api/chats/{chat_id}/messages")
    async def send_message(chat_id: str, request: Request, user_id: str = Depends(get_user_id)):
        body = await read_json_body(request)
        session = app.state.chat_relay_service.send_message(
            user_id, chat_id, body.get("content"),
            model=body.get("model"),
            temperature=body.get("temperature"),
            max_tokens=body.get("max_tokens"),
            request_id=getattr(request.state, "request_id", None),
        )
        return StreamingResponse(stream_session(session), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/api/chats/{chat_id}/messages/{message_id}/regenerate")
    async def regenerate_message(chat_id: str, message_id: str, request: Request,
                                 user_id: str = Depends(get_user_id)):
        session = app.state.chat_relay_service.regenerate(
            user_id, chat_id, message_id,
            request_id=getattr(request.state, "request_id", None),
        )
        return StreamingResponse(stream_session(session), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.patch("/api/chats/{chat_id}/messages/{message_id}")
    async def update_message(chat_id: str, message_id: str, request: Request,
                             user_id: str = Depends(get_user_id)):
        body = await read_json_body(request)
        try:
            message = app.state.store.update_message(user_id, chat_id, message_id, {"content": body.get("content")})
        except ChatNotFoundError:
            raise ErrorHandler.handle_chat_not_found(chat_id, _context(request, user_id))
        except MessageNotFoundError:
            raise ErrorHandler.handle_message_not_found(message_id, _context(request, user_id, chat_id=chat_id))
        return {"message": message}

    @app.delete("/api/chats/{chat_id}/messages/{message_id}")
    async def delete_message(chat_id: str, message_id: str, request: Request,
                             user_id: str = Depends(get_user_id)):
        try:
            deleted = app.state.store.delete_message(user_id, chat_id, message_id)
        except ChatNotFoundError:
            raise ErrorHandler.handle_chat_not_found(chat_id, _context(request, user_id))
        if not deleted:
            raise ErrorHandler.handle_message_not_found(message_id, _context(request, user_id, chat_id=chat_id))
        return {"ok": True}

    return app


app = create_app()


def main():
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
