import logging
import time
import uuid
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from config.settings import Settings, get_settings
from providers.http_client import UpstreamHttpClient
from services.payload_validator import validate_payload
from services.turn_service import TurnOrchestrator
from utils.errors import AdmissionRejected, ValidationError
from utils.logger import log_event, setup_logging
from utils.rate_limiter import ClientAdmissionGate, ConcurrencyLimiter, client_identity

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "故事生成失败，请稍后再试。"


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[TurnOrchestrator] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR, settings.LOG_FILE)
    for warning in settings.validate_settings():
        logger.warning(warning)

    limiter = ConcurrencyLimiter(settings.ZHIPU_MAX_CONCURRENT)
    http = UpstreamHttpClient(limiter, settings.retry_backoff_seconds())
    orchestrator = orchestrator or TurnOrchestrator.from_settings(settings, http)
    gate = ClientAdmissionGate(settings.MAX_INFLIGHT_PER_CLIENT)

    app = FastAPI(
        title="SHNU Playbrary API",
        description="Book-based interactive story turns (text + pixel-art illustration)",
        version="1.0.0"
    )
    app.state.settings = settings
    app.state.limiter = limiter
    app.state.gate = gate
    app.state.orchestrator = orchestrator

    origins, origin_regex = settings.allowed_origin_patterns()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_origin_regex=origin_regex or None,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    if settings.image_provider_name() == "comfyui":
        app.mount(
            "/generated",
            StaticFiles(directory=settings.COMFYUI_OUTPUT_DIR, check_dir=False),
            name="generated",
        )

    @app.post("/api/play-turn")
    async def play_turn(http_request: Request):
        request_id = str(uuid.uuid4())
        started_at = time.monotonic()
        headers = {"X-Request-ID": request_id}

        def elapsed_ms() -> int:
            return int((time.monotonic() - started_at) * 1000)

        try:
            body = await http_request.json()
        except ValueError:
            body = None

        try:
            payload = validate_payload(body)
        except ValidationError as e:
            log_event(logger, logging.WARNING, "play_turn_bad_request", requestId=request_id, ms=elapsed_ms())
            return PlainTextResponse(str(e), status_code=400, headers=headers)

        identity = client_identity(
            http_request.headers.get("x-forwarded-for"),
            http_request.client.host if http_request.client else None,
        )

        try:
            async with gate.admit(identity):
                log_event(
                    logger, logging.INFO, "play_turn_start",
                    requestId=request_id,
                    round=payload.round,
                    historyCount=len(payload.history),
                )
                result = await orchestrator.play_turn(payload, request_id)
        except AdmissionRejected as e:
            log_event(logger, logging.WARNING, "play_turn_busy", requestId=request_id, client=identity)
            return PlainTextResponse(str(e), status_code=429, headers=headers)
        except Exception as e:
            log_event(
                logger, logging.ERROR, "play_turn_failed",
                requestId=request_id,
                ms=elapsed_ms(),
                error={"type": type(e).__name__, "message": str(e)},
            )
            return PlainTextResponse(str(e) or GENERIC_FAILURE, status_code=500, headers=headers)

        log_event(logger, logging.INFO, "play_turn_ok", requestId=request_id, ms=elapsed_ms())
        return JSONResponse(result.to_wire(), headers=headers)

    @app.get("/api/health")
    async def api_health():
        return {"status": "ok"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/status")
    async def status():
        """Limiter / gate counters and configured providers"""
        return {
            "providers": orchestrator.describe_providers(),
            "configured": settings.get_current_provider_info(),
            "available": settings.get_available_providers(),
            "upstream_limiter": limiter.get_status(),
            "admission_gate": gate.get_status(),
            "timestamp": datetime.now().isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().API_PORT)
