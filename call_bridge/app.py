"""HTTP surface of the call bridge.

FastAPI application exposing the PBX webhook, health checks, an echo test
endpoint and a manual trigger. Every pipeline failure is caught here, logged
with its stack, and returned as HTTP 500 carrying the request id.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from call_bridge import __version__
from call_bridge.calls.normalizer import CallRecord, normalize_call_event
from call_bridge.config import BridgeConfig
from call_bridge.pipeline import CallProcessor

logger = logging.getLogger(__name__)

SERVICE_NAME = "PBX Call Transcription Bridge"
AVAILABLE_ENDPOINTS = [
    "GET /",
    "GET /health",
    "POST /yeastar-webhook",
    "POST /webhook",
    "POST /test",
    "POST /manual-trigger",
]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _new_request_id() -> str:
    return uuid.uuid4().hex


FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


async def _read_payload(request: Request) -> dict[str, Any] | None:
    """Decode the body as a JSON object, or as form fields when form-encoded."""
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith(FORM_CONTENT_TYPE):
        form_data = await request.form()
        return {key: str(value) for key, value in form_data.items()}
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_response(
    message: str, call_id: str, request_id: str, status_code: int = 500
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "call_id": call_id,
            "request_id": request_id,
            "timestamp": _now(),
        },
    )


def create_app(
    config: BridgeConfig | None = None,
    processor: CallProcessor | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Runtime configuration (read from the environment if omitted).
        processor: Pipeline to run (built from config if omitted).

    Returns:
        Configured FastAPI app whose lifespan starts and stops the pipeline.
    """
    config = config or BridgeConfig.from_env()
    processor = processor or CallProcessor.from_config(config)
    background_tasks: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await processor.start()
        logger.info(
            "Bridge started: forwarding=%s pbx=%s transcription=%s language=%s",
            "configured" if config.forwarding_configured else "NOT CONFIGURED",
            "configured" if config.pbx_configured else "NOT CONFIGURED",
            "configured" if config.transcription_configured else "NOT CONFIGURED",
            config.transcription_language,
        )
        try:
            yield
        finally:
            if background_tasks:
                await asyncio.gather(*background_tasks, return_exceptions=True)
            await processor.close()
            logger.info("Bridge stopped")

    app = FastAPI(title=SERVICE_NAME, version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.processor = processor
    app.state.background_tasks = background_tasks

    def _health() -> dict[str, Any]:
        return {
            "status": "OK",
            "service": SERVICE_NAME,
            "version": __version__,
            "timestamp": _now(),
            "config": {
                "pbx_configured": processor.credentials.is_configured,
                "transcription_configured": config.transcription_configured,
                "forwarding_configured": config.forwarding_configured,
                "transcription_language": config.transcription_language,
                "token_mode": config.token_mode,
                "token_refresh": config.token_refresh_enabled,
            },
        }

    @app.get("/")
    async def root() -> dict[str, Any]:
        return _health()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return _health()

    async def _run_detached(record: CallRecord, request_id: str) -> None:
        try:
            await processor.process_record(record, request_id)
        except Exception:
            logger.error(
                "Background call processing failed",
                exc_info=True,
                extra={"request_id": request_id},
            )

    async def handle_webhook(request: Request) -> JSONResponse:
        request_id = _new_request_id()
        payload = await _read_payload(request)
        if payload is None:
            return _error_response(
                "Request body must be a JSON object", "unknown", request_id, 400
            )

        record = normalize_call_event(payload)
        log_extra = {"call_id": record.call_id, "request_id": request_id}
        logger.info("Received call webhook", extra=log_extra)
        logger.debug("Webhook payload: %s", payload, extra=log_extra)

        if not record.has_recording:
            logger.warning("No recording available for this call", extra=log_extra)
            return JSONResponse(
                {
                    "success": True,
                    "message": "Call received but no recording to process",
                    "call_id": record.call_id,
                    "request_id": request_id,
                }
            )

        if config.process_in_background:
            task = asyncio.create_task(_run_detached(record, request_id))
            background_tasks.add(task)
            task.add_done_callback(background_tasks.discard)
            return JSONResponse(
                {
                    "success": True,
                    "message": "Call accepted for processing",
                    "call_id": record.call_id,
                    "request_id": request_id,
                }
            )

        try:
            result = await processor.process_record(record, request_id)
        except Exception as exc:
            logger.error(
                "Error processing webhook: %s", exc, exc_info=True, extra=log_extra
            )
            return _error_response(str(exc), record.call_id, request_id)

        return JSONResponse(
            {
                "success": True,
                "message": "Recording transcribed and forwarded",
                "call_id": result.call_id,
                "request_id": request_id,
                "processing_time_ms": result.processing_time_ms,
                "audio_size_bytes": result.audio_size_bytes,
                "transcript_length": result.transcript_length,
            }
        )

    app.add_api_route("/yeastar-webhook", handle_webhook, methods=["POST"])
    app.add_api_route("/webhook", handle_webhook, methods=["POST"])

    @app.post("/test")
    async def test_endpoint(request: Request) -> dict[str, Any]:
        logger.info("Test endpoint called")
        try:
            received = await request.json()
        except ValueError:
            received = None
        return {
            "status": "OK",
            "message": "Test successful",
            "received_data": received,
            "timestamp": _now(),
        }

    @app.post("/manual-trigger")
    async def manual_trigger(request: Request) -> JSONResponse:
        request_id = _new_request_id()
        payload = await _read_payload(request) or {}
        recording_url = payload.get("recording_url")
        if not recording_url:
            return JSONResponse(
                status_code=400,
                content={"error": "recording_url is required", "request_id": request_id},
            )

        call_id = str(payload.get("call_id") or "manual_test")
        record = normalize_call_event({**payload, "call_id": call_id})
        logger.info(
            "Manual trigger called",
            extra={"call_id": call_id, "request_id": request_id},
        )
        try:
            result = await processor.process_record(record, request_id)
        except Exception as exc:
            logger.error(
                "Manual trigger failed: %s",
                exc,
                exc_info=True,
                extra={"call_id": call_id, "request_id": request_id},
            )
            return _error_response(str(exc), call_id, request_id)

        return JSONResponse(
            {
                "success": True,
                "call_id": call_id,
                "request_id": request_id,
                "result": result.delivery,
            }
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content={
                    "error": "Not Found",
                    "message": f"Route {request.method} {request.url.path} not found",
                    "available_endpoints": AVAILABLE_ENDPOINTS,
                },
            )
        return JSONResponse(
            status_code=exc.status_code, content={"error": str(exc.detail)}
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error("Unhandled error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "message": str(exc),
                "timestamp": _now(),
            },
        )

    return app
