# server.py - Parla API
import asyncio
import time
from typing import Optional

# FASTAPI IMPORTS
from fastapi import Depends, FastAPI, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# RATE LIMITING IMPORTS
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

import psutil
from sqlalchemy import text

from parla import __version__
from parla.ai_providers import create_ai_provider
from parla.auth import decode_user_id, get_current_user, get_optional_user
from parla.chat_service import ChatService
from parla.chats import ChatManager
from parla.config import Settings, load_settings
from parla.database import create_session_factory, init_db, utcnow
from parla.errors import ParlaError, UnauthorizedError
from parla.log import configure_logging, get_logger
from parla.proactive import ProactiveScheduler
from parla.realtime import RealtimeFeed, connect_redis
from parla.schemas import (ChatRequest, CreateChatRequest, DeleteVocabularyRequest, MarkReadRequest,
                           ProactiveRequest, ReactionRequest, SaveVocabularyRequest, TranslateRequest)
from parla.store import Store
from parla.translation import TranslationService

logger = get_logger("server")


def create_app(settings: Optional[Settings] = None,
               store: Optional[Store] = None,
               feed: Optional[RealtimeFeed] = None,
               provider_factory=create_ai_provider,
               sleep=asyncio.sleep) -> FastAPI:
    # 1. INITIALIZATION
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    # Setup Rate Limiter
    limiter = Limiter(key_func=get_remote_address)

    app = FastAPI(
        title="Parla API",
        description="AI conversation partner for language learners",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )

    # Connect Rate Limiter to App
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 2. DATABASE & REAL-TIME SETUP
    engine = None
    if store is None:
        engine, session_factory = create_session_factory(settings.database_url)
        store = Store(session_factory)

    if feed is None:
        feed = RealtimeFeed(connect_redis(settings.redis_url))

    # 3. SERVICES
    chat_service = ChatService(store, settings, feed, provider_factory=provider_factory, sleep=sleep)
    translation_service = TranslationService(store, settings, provider_factory=provider_factory)
    scheduler = ProactiveScheduler(store, settings, feed, provider_factory=provider_factory)
    chats = ChatManager(store, settings, feed)

    app.state.settings = settings
    app.state.store = store
    app.state.feed = feed
    app.state.start_time = time.time()

    # 4. ERROR HANDLERS
    @app.exception_handler(ParlaError)
    async def parla_error_handler(request: Request, exc: ParlaError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Missing required fields"})

    # 5. API ENDPOINTS
    @app.post("/api/chat")
    @limiter.limit("30/minute")
    async def chat(request: Request, body: ChatRequest, user_id: str = Depends(get_current_user)):
        """One chat turn. Replies arrive on the chat's real-time feed."""
        try:
            return await chat_service.handle_turn(body.chat_id,
                                                  body.message,
                                                  body.language,
                                                  feature_mode=body.feature_mode,
                                                  reply_to_id=body.reply_to_id,
                                                  requester_id=user_id)
        except ParlaError:
            raise
        except Exception as e:
            logger.error("Chat error", error=str(e), chat_id=body.chat_id, user_id=user_id)
            raise ParlaError("Failed to process message") from e

    @app.post("/api/translate")
    @limiter.limit("60/minute")
    async def translate(request: Request, body: TranslateRequest,
                        user_id: Optional[str] = Depends(get_optional_user)):
        try:
            return await translation_service.translate(body.word, body.target_language,
                                                       chat_id=body.chat_id, requester_id=user_id)
        except ParlaError:
            raise
        except Exception as e:
            logger.error("Translation error", error=str(e), word=body.word, user_id=user_id)
            raise ParlaError("Failed to translate") from e

    @app.post("/api/proactive-message")
    @limiter.limit("10/minute")
    async def proactive_message(request: Request, body: ProactiveRequest,
                                user_id: str = Depends(get_current_user)):
        try:
            return await scheduler.maybe_send(body.chat_id, requester_id=user_id)
        except ParlaError:
            raise
        except Exception as e:
            logger.error("Proactive message error", error=str(e), chat_id=body.chat_id, user_id=user_id)
            raise ParlaError("Internal server error") from e

    @app.post("/api/chats", status_code=status.HTTP_201_CREATED)
    @limiter.limit("10/minute")
    async def create_chat(request: Request, body: CreateChatRequest, user_id: str = Depends(get_current_user)):
        return {"chat": chats.create_chat(user_id, body.title, body.language)}

    @app.post("/api/messages/read")
    async def mark_read(body: MarkReadRequest, user_id: str = Depends(get_current_user)):
        updated = await chats.mark_read(user_id, body.message_ids)
        return {"success": True, "updated": [m["id"] for m in updated]}

    @app.post("/api/reactions")
    async def toggle_reaction(body: ReactionRequest, user_id: str = Depends(get_current_user)):
        reactions = await chats.toggle_reaction(user_id, body.message_id, body.reaction)
        return {"reactions": reactions}

    @app.post("/api/vocab", status_code=status.HTTP_201_CREATED)
    async def save_vocabulary(body: SaveVocabularyRequest, user_id: str = Depends(get_current_user)):
        vocab = chats.save_vocabulary(user_id, body.chat_id, body.word, body.translation, body.context)
        return {"vocabulary": vocab}

    @app.delete("/api/vocab")
    async def delete_vocabulary(body: DeleteVocabularyRequest, user_id: str = Depends(get_current_user)):
        chats.delete_vocabulary(user_id, body.id)
        return {"success": True}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        checks = {
            "api": "healthy",
            "timestamp": utcnow().isoformat(),
            "version": __version__
        }

        # Check Redis
        if feed.enabled:
            try:
                await feed.redis.ping()
                checks["redis"] = "connected"
            except Exception as e:
                logger.warning("Redis health check failed", error=str(e))
                checks["redis"] = "disconnected"
        else:
            checks["redis"] = "not_configured"

        # Check Database
        try:
            with store.session() as db:
                db.execute(text("SELECT 1"))
            checks["database"] = "connected"
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            checks["database"] = "disconnected"

        # System info
        checks["system"] = {
            "memory_usage_mb": psutil.Process().memory_info().rss / 1024 / 1024,
            "cpu_percent": psutil.cpu_percent(),
            "uptime_seconds": time.time() - app.state.start_time
        }

        overall_status = "healthy" if all(
            checks[key] in ["healthy", "connected", "not_configured"]
            for key in ("api", "redis", "database")
        ) else "degraded"

        checks["status"] = overall_status
        return checks

    @app.websocket("/ws/chats/{chat_id}")
    async def chat_feed(websocket: WebSocket, chat_id: str, token: Optional[str] = None):
        """Relay a chat's INSERT/UPDATE events to the client."""
        try:
            user_id = decode_user_id(token, settings)
        except UnauthorizedError:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        chat_row = store.get_chat(chat_id)
        if not feed.enabled or chat_row is None or chat_row.user_id != user_id:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        logger.info("Realtime subscriber joined", chat_id=chat_id, user_id=user_id)
        await feed.relay(websocket, chat_id)

    # 6. STARTUP AND SHUTDOWN
    @app.on_event("startup")
    async def startup_event():
        """Initialize services on startup"""
        logger.info("Starting Parla API...", environment=settings.environment)

        if engine is not None:
            init_db(engine)

        if feed.enabled:
            try:
                await feed.redis.ping()
                logger.info("Redis connection successful")
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}")
        else:
            logger.warning("Redis not configured")

        logger.info("Parla API ready!", version=__version__)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        logger.info("Shutting down Parla API...")

        if feed.enabled:
            await feed.redis.aclose()

        logger.info("Cleanup complete")

    return app


app = create_app()

# 7. MAIN ENTRY POINT
if __name__ == "__main__":
    import uvicorn

    # Configuration
    config = {
        "host": "0.0.0.0",
        "port": 8000,
        "reload": True,
        "log_level": "info",
        "access_log": True
    }

    logger.info(f"Starting server on {config['host']}:{config['port']}")
    uvicorn.run("server:app", **config)
