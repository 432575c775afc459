"""OpenAI Whisper transcription client.

Submits audio to an OpenAI-compatible ``/audio/transcriptions`` endpoint as
a multipart upload and converts the verbose JSON response into the internal
TranscriptionResult model.
"""

import logging

import httpx

from call_bridge.asr.interface import TranscriptionEngine, TranscriptionResult
from call_bridge.config import DEFAULT_TRANSCRIPTION_URL
from call_bridge.utils.errors import (
    ConfigurationError,
    TranscriptionError,
    TranscriptionTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "whisper-1"
RESPONSE_FORMAT = "verbose_json"
# Any 5xx is transient too
TRANSIENT_STATUS_CODES = {408, 429}


class WhisperEngine(TranscriptionEngine):
    """Whisper speech-to-text engine.

    Args:
        api_key: OpenAI API key for authentication.
        url: Transcription endpoint URL.
        model: Model identifier (default ``whisper-1``).
        language: ISO-639-1 language hint.
        timeout: Request timeout in seconds (default 120).
        client: Optional shared httpx client (created if not provided).
    """

    provider = "whisper"

    def __init__(
        self,
        api_key: str = "",
        url: str = DEFAULT_TRANSCRIPTION_URL,
        model: str = DEFAULT_MODEL,
        language: str = "",
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = url
        self._model = model
        self._language = language
        self._timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def transcribe(
        self, audio: bytes, call_id: str, audio_format: str = "wav"
    ) -> TranscriptionResult:
        """Transcribe audio bytes via the Whisper API.

        Raises:
            ConfigurationError: If no API key is configured.
            TranscriptionTimeoutError: If the request times out.
            TranscriptionError: On network failure or a non-success response.
        """
        if not self._api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is not configured", setting="OPENAI_API_KEY"
            )

        files = {
            "file": (f"call_{call_id}.{audio_format}", audio, f"audio/{audio_format}"),
        }
        data = {"model": self._model, "response_format": RESPONSE_FORMAT}
        if self._language:
            data["language"] = self._language
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            response = await self._client.post(
                self._url,
                headers=headers,
                files=files,
                data=data,
                timeout=self._timeout,
            )
        except httpx.TimeoutException as exc:
            raise TranscriptionTimeoutError(
                f"Transcription timeout after {self._timeout}s",
                call_id=call_id,
                provider=self.provider,
            ) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionError(
                f"Transcription request failed: {exc}",
                call_id=call_id,
                provider=self.provider,
            ) from exc

        if not response.is_success:
            raise TranscriptionError(
                f"Transcription failed: HTTP {response.status_code} - "
                f"{self._error_message(response)}",
                call_id=call_id,
                provider=self.provider,
                status_code=response.status_code,
                transient=(
                    response.status_code in TRANSIENT_STATUS_CODES
                    or response.status_code >= 500
                ),
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TranscriptionError(
                "Transcription response is not valid JSON",
                call_id=call_id,
                provider=self.provider,
                transient=False,
            ) from exc

        if not isinstance(body, dict) or "text" not in body:
            raise TranscriptionError(
                "No text in transcription response",
                call_id=call_id,
                provider=self.provider,
                transient=False,
            )

        result = self._convert_response(body)
        logger.info(
            "Transcription completed: %d characters",
            len(result.text),
            extra={"call_id": call_id},
        )
        return result

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Extract ``error.message`` from a JSON error body, else raw text."""
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str):
                return error
            if body.get("message"):
                return str(body["message"])
        return response.text

    def _convert_response(self, body: dict) -> TranscriptionResult:
        segments = body.get("segments")
        try:
            duration = float(body.get("duration") or 0.0)
        except (TypeError, ValueError):
            duration = 0.0
        return TranscriptionResult(
            text=(body.get("text") or "").strip(),
            language=body.get("language") or self._language,
            duration=duration,
            segment_count=len(segments) if isinstance(segments, list) else None,
            raw_response=body,
        )
