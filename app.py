from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import RoomRegistry
from constants import ALLOWED_ORIGINS, LOG_FILE, LOG_LEVEL, SERVICE_NAME
from logging_config import get_logger, setup_logging
from relay import SignalingRelay
from routers.rooms import rooms_router
from routers.signaling import signaling_router
from schemas.rooms import ServiceInfoResponse

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(registry: Optional[RoomRegistry] = None) -> FastAPI:
    app = FastAPI(title=SERVICE_NAME)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        # credentials cannot be combined with a wildcard origin
        allow_credentials="*" not in ALLOWED_ORIGINS,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Room state lives only as long as this app instance
    app.state.registry = registry or RoomRegistry()
    app.state.relay = SignalingRelay(app.state.registry)

    @app.get("/", response_model=ServiceInfoResponse)
    async def service_info():
        return ServiceInfoResponse(hello="world", service=SERVICE_NAME, status="running")

    app.include_router(rooms_router)
    app.include_router(signaling_router)

    logger.info(f"FastAPI application initialized, allowed origins: {ALLOWED_ORIGINS}")
    return app


app = create_app()
