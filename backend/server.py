"""Device Gateway — HTTP/WebSocket entry point.

Mounts the device WebSocket and a small REST surface for hosting apps:
health, session listing and the four send operations.
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional
import logging

from dotenv import load_dotenv
from fastapi import FastAPI, APIRouter, WebSocket, Header, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

# Load env before anything else
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

from auth.api_keys import build_api_key_validator
from config.settings import get_settings
from config.validators import validate_startup_config
from core.logging_config import setup_logging
from core.exceptions import GatewayError
from gateway.ws_server import DeviceGateway, handle_ws_connection

# ---- Setup logging ----
setup_logging()
logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    "API_KEY_REQUIRED": 401,
    "VALIDATION_ERROR": 400,
    "FILE_TOO_LARGE": 413,
    "FETCH_ERROR": 502,
    "NO_ACTIVE_DEVICE": 503,
    "CONNECTION_LOST": 503,
    "GATEWAY_SHUTDOWN": 503,
    "REQUEST_TIMEOUT": 504,
}


def _require_api_key(x_api_key: Optional[str]) -> str:
    if not x_api_key:
        raise GatewayError("API key required", code="API_KEY_REQUIRED")
    return x_api_key


def create_app(gateway: Optional[DeviceGateway] = None) -> FastAPI:
    settings = get_settings()
    if gateway is None:
        gateway = DeviceGateway(validate_api_key=build_api_key_validator(settings), settings=settings)

    # ---- Lifespan ----
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_startup_config(gateway.settings)
        logger.info("Device gateway starting — env=%s ws_path=%s", gateway.settings.ENV, gateway.settings.WS_PATH)
        await gateway.start()
        yield
        await gateway.stop()
        logger.info("Device gateway shutdown complete")

    app = FastAPI(title="Device Gateway", version="0.1.0", lifespan=lifespan)
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(exc.code, 400),
            content={"success": False, "error": exc.to_dict()},
        )

    api_router = APIRouter(prefix="/api")

    # ---- Health ----
    @api_router.get("/health")
    async def health():
        return gateway.health()

    # ---- Sessions ----
    @api_router.get("/sessions")
    async def list_sessions(x_api_key: Optional[str] = Header(default=None)):
        api_key = _require_api_key(x_api_key)
        return {
            "success": True,
            "sessions": [s.model_dump(by_alias=True) for s in gateway.list_active_sessions(api_key)],
        }

    # ---- Send operations ----
    @api_router.post("/send-message")
    async def send_message(payload: Dict[str, Any], x_api_key: Optional[str] = Header(default=None)):
        result = await gateway.send_message(_require_api_key(x_api_key), payload)
        return {"success": True, "result": result.model_dump(by_alias=True)}

    @api_router.post("/send-image")
    async def send_image(payload: Dict[str, Any], x_api_key: Optional[str] = Header(default=None)):
        result = await gateway.send_image(_require_api_key(x_api_key), payload)
        return {"success": True, "result": result.model_dump(by_alias=True)}

    @api_router.post("/send-video")
    async def send_video(payload: Dict[str, Any], x_api_key: Optional[str] = Header(default=None)):
        result = await gateway.send_video(_require_api_key(x_api_key), payload)
        return {"success": True, "result": result.model_dump(by_alias=True)}

    @api_router.post("/send-document")
    async def send_document(payload: Dict[str, Any], x_api_key: Optional[str] = Header(default=None)):
        result = await gateway.send_document(_require_api_key(x_api_key), payload)
        return {"success": True, "result": result.model_dump(by_alias=True)}

    app.include_router(api_router)

    # =====================================================
    #  WebSocket Endpoint
    # =====================================================

    @app.websocket(gateway.settings.WS_PATH)
    async def websocket_endpoint(websocket: WebSocket):
        """Device WebSocket endpoint for browser-extension agents."""
        await handle_ws_connection(websocket, gateway)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("server:app", host=settings.HOST, port=settings.PORT, reload=False)
