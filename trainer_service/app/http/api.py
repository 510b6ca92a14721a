from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI

from trainer_service.app.http.routers.chat import router as chat_router
from trainer_service.app.http.routers.delivery import router as delivery_router
from trainer_service.app.http.routers.health import router as health_router
from trainer_service.app.http.routers.sessions import router as sessions_router
from trainer_service.protocol.delivery.connectivity import HttpProbeConnectivity
from trainer_service.protocol.service.chat_service import ChatService
from trainer_service.core.logging import logger


def create_app(chat_service: Optional[ChatService] = None) -> FastAPI:
    """Create and configure the FastAPI application with DI"""
    if chat_service is None:
        from trainer_service.core.factory import ServiceFactory

        chat_service = ServiceFactory().get_chat_service()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        connectivity = chat_service.connectivity
        if isinstance(connectivity, HttpProbeConnectivity):
            connectivity.start()
        queued = await chat_service.offline_queue()
        if queued and connectivity.is_connected():
            logger.info(f"Replaying {len(queued)} queued message(s) from a previous run")
            await chat_service.drain_offline_queue()
        yield
        await chat_service.wait_idle()
        if isinstance(connectivity, HttpProbeConnectivity):
            await connectivity.stop()

    app = FastAPI(title="trainer-service", lifespan=lifespan)
    app.state.chat_svc = chat_service

    v1_router = APIRouter(prefix="/api/v1")
    v1_router.include_router(chat_router)
    v1_router.include_router(sessions_router)
    v1_router.include_router(delivery_router)

    app.include_router(health_router)
    app.include_router(v1_router)
    return app
