"""Call processing orchestrator.

Orchestrates: normalize -> ensure token -> download (retried) -> validate ->
transcribe (retried) -> forward. Calls without a recording short-circuit as
skipped. Failures propagate to the caller after per-call metrics are logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from call_bridge.asr.interface import TranscriptionEngine, TranscriptionResult
from call_bridge.asr.registry import get_transcription_engine
from call_bridge.audio.validator import validate_audio
from call_bridge.auth.credentials import CredentialManager
from call_bridge.calls.normalizer import CallRecord
from call_bridge.config import BridgeConfig
from call_bridge.delivery.forwarder import ResultForwarder
from call_bridge.observability.metrics import CallMetrics, log_call_metrics
from call_bridge.recording.retriever import RecordingRetriever
from call_bridge.utils.errors import BridgeError
from call_bridge.utils.retry import run_with_retry

logger = logging.getLogger(__name__)

STAGES = ("credentials", "download", "validate", "transcribe", "forward")


@dataclass
class CallProcessingResult:
    """Result of processing a single call event."""

    status: Literal["completed", "skipped"]
    call_id: str
    request_id: str
    processing_time_ms: int
    audio_size_bytes: int = 0
    audio_format: str = ""
    transcript_length: int = 0
    delivery: dict[str, Any] = field(default_factory=dict)
    stage_timings: dict[str, float] = field(default_factory=dict)


class _StageTimer:
    """Context manager for recording stage timings."""

    def __init__(self, stage_name: str, timings: dict[str, float]) -> None:
        self._stage_name = stage_name
        self._timings = timings
        self._start: float = 0.0

    def __enter__(self) -> _StageTimer:
        self._start = time.monotonic()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        elapsed = time.monotonic() - self._start
        # Failed stages are recorded under a sentinel key
        if exc_type is not None:
            self._timings[f"_{self._stage_name}_failed"] = elapsed
        else:
            self._timings[self._stage_name] = elapsed


def _determine_error_stage(stage_timings: dict[str, float]) -> str:
    """Return the stage that failed, based on recorded timings."""
    for stage in STAGES:
        if f"_{stage}_failed" in stage_timings:
            return stage
    for stage in STAGES:
        if stage not in stage_timings:
            return stage
    return "unknown"


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class CallProcessor:
    """Runs the download/transcribe/forward pipeline for call events.

    Args:
        config: Runtime configuration (retry policy, size limits).
        credentials: Shared PBX credential manager.
        retriever: Recording retriever.
        engine: Transcription engine.
        forwarder: Downstream result forwarder.
    """

    def __init__(
        self,
        config: BridgeConfig,
        credentials: CredentialManager,
        retriever: RecordingRetriever,
        engine: TranscriptionEngine,
        forwarder: ResultForwarder,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.credentials = credentials
        self.retriever = retriever
        self.engine = engine
        self.forwarder = forwarder
        self._client = client

    @classmethod
    def from_config(cls, config: BridgeConfig) -> CallProcessor:
        """Wire every component from configuration around one HTTP client."""
        client = httpx.AsyncClient(follow_redirects=True)
        credentials = CredentialManager(
            base_url=config.pbx_base_url,
            client_id=config.pbx_client_id,
            client_secret=config.pbx_client_secret,
            static_token=config.pbx_api_token,
            mode=config.token_mode,
            auto_refresh=config.token_refresh_enabled,
            refresh_interval=config.token_refresh_interval,
            retry_base_delay=config.token_retry_base_delay,
            retry_max_delay=config.token_retry_max_delay,
            max_failures=config.token_max_failures,
            timeout=config.token_timeout,
            client=client,
        )
        retriever = RecordingRetriever(
            credentials,
            base_url=config.pbx_base_url,
            mode=config.recording_download_mode,
            resolve_timeout=config.resolve_timeout,
            download_timeout=config.download_timeout,
            min_bytes=config.min_audio_bytes,
            client=client,
        )
        engine = get_transcription_engine(
            "whisper",
            api_key=config.openai_api_key,
            url=config.transcription_url,
            model=config.transcription_model,
            language=config.transcription_language,
            timeout=config.transcription_timeout,
            client=client,
        )
        forwarder = ResultForwarder(
            webhook_url=config.forward_webhook_url,
            timeout=config.forward_timeout,
            client=client,
        )
        return cls(config, credentials, retriever, engine, forwarder, client=client)

    async def start(self) -> None:
        await self.credentials.start()

    async def close(self) -> None:
        """Stop token refresh and release HTTP resources."""
        await self.credentials.close()
        await self.retriever.close()
        await self.engine.close()
        await self.forwarder.close()
        if self._client is not None:
            await self._client.aclose()

    async def process_record(
        self, record: CallRecord, request_id: str
    ) -> CallProcessingResult:
        """Process one normalized call.

        Args:
            record: Normalized call record.
            request_id: Correlation id of the inbound webhook.

        Returns:
            CallProcessingResult; status "skipped" when there is no recording.

        Raises:
            BridgeError: Any pipeline failure, after metrics are logged.
        """
        start = time.monotonic()
        log_extra = {"call_id": record.call_id, "request_id": request_id}

        if not record.has_recording:
            logger.warning("No recording available for this call", extra=log_extra)
            return CallProcessingResult(
                status="skipped",
                call_id=record.call_id,
                request_id=request_id,
                processing_time_ms=_elapsed_ms(start),
            )

        stage_timings: dict[str, float] = {}
        audio_size = 0
        audio_format = ""
        try:
            with _StageTimer("credentials", stage_timings):
                # per_request tokens are fetched by the retriever itself
                if record.needs_token and self.credentials.mode == "cached":
                    await self.credentials.ensure_valid()

            logger.info("Downloading recording", extra=log_extra)
            with _StageTimer("download", stage_timings):
                audio = await run_with_retry(
                    lambda: self.retriever.fetch(record),
                    max_attempts=self.config.max_attempts,
                    label="Recording download",
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                    call_id=record.call_id,
                )
            audio_size = len(audio)

            with _StageTimer("validate", stage_timings):
                check = validate_audio(
                    audio,
                    min_bytes=self.config.min_audio_bytes,
                    max_bytes=self.config.max_audio_bytes,
                    call_id=record.call_id,
                )
            audio_format = check.format

            logger.info("Transcribing %s audio", audio_format, extra=log_extra)
            with _StageTimer("transcribe", stage_timings):
                transcript: TranscriptionResult = await run_with_retry(
                    lambda: self.engine.transcribe(audio, record.call_id, check.format),
                    max_attempts=self.config.max_attempts,
                    label="Transcription",
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                    call_id=record.call_id,
                )

            logger.info("Forwarding transcription", extra=log_extra)
            with _StageTimer("forward", stage_timings):
                delivery = await self.forwarder.forward(transcript, record)

        except Exception as exc:
            error_stage = _determine_error_stage(stage_timings)
            logger.error(
                "Pipeline failed at stage '%s': %s",
                error_stage,
                exc,
                extra={**log_extra, "stage": error_stage},
            )
            log_call_metrics(
                CallMetrics(
                    call_id=record.call_id,
                    request_id=request_id,
                    status="failed",
                    processing_time_ms=_elapsed_ms(start),
                    audio_size_bytes=audio_size,
                    audio_format=audio_format,
                    stage_timings=stage_timings,
                    retry_count=getattr(exc, "_retry_count", 0),
                    error_stage=error_stage,
                    error_message=str(exc),
                )
            )
            if not isinstance(exc, BridgeError):
                raise BridgeError(
                    f"Unexpected failure during {error_stage}: {exc}",
                    call_id=record.call_id,
                ) from exc
            raise

        processing_time_ms = _elapsed_ms(start)
        log_call_metrics(
            CallMetrics(
                call_id=record.call_id,
                request_id=request_id,
                status="completed",
                processing_time_ms=processing_time_ms,
                audio_size_bytes=audio_size,
                audio_format=audio_format,
                transcript_length=len(transcript.text),
                transcript_duration_seconds=transcript.duration,
                stage_timings=stage_timings,
            )
        )
        return CallProcessingResult(
            status="completed",
            call_id=record.call_id,
            request_id=request_id,
            processing_time_ms=processing_time_ms,
            audio_size_bytes=audio_size,
            audio_format=audio_format,
            transcript_length=len(transcript.text),
            delivery=delivery,
            stage_timings=stage_timings,
        )
