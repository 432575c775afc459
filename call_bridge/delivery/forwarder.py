"""Downstream result delivery.

Posts one flat JSON document per transcribed call to the automation
platform's webhook (e.g. an n8n workflow).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from call_bridge.asr.interface import TranscriptionResult
from call_bridge.calls.normalizer import CallRecord
from call_bridge.utils.errors import (
    ConfigurationError,
    DeliveryError,
    DeliveryTimeoutError,
)

logger = logging.getLogger(__name__)


def build_payload(result: TranscriptionResult, record: CallRecord) -> dict[str, Any]:
    """Merge transcript fields and call metadata into the delivery document."""
    return {
        "call_id": record.call_id,
        "transcript": result.text,
        "language": result.language,
        "duration": result.duration or record.duration,
        "talk_duration": record.talk_duration,
        "caller_number": record.caller_number,
        "callee_number": record.callee_number,
        "start_time": record.start_time,
        "end_time": record.end_time,
        "status": record.status,
        "call_type": record.call_type,
        "trunk": record.trunk,
        "segment_count": result.segment_count,
        "transcription_date": datetime.now(UTC).isoformat(),
        "word_count": len(result.text.split()),
    }


class ResultForwarder:
    """Client for the downstream result webhook.

    Args:
        webhook_url: Destination URL (``N8N_WEBHOOK_URL``).
        timeout: Request timeout in seconds (default 30).
        client: Optional shared httpx client (created if not provided).
    """

    def __init__(
        self,
        webhook_url: str = "",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def close(self) -> None:
        """Close the HTTP client and release its connection pool."""
        if self._owns_client:
            await self._client.aclose()

    async def forward(
        self, result: TranscriptionResult, record: CallRecord
    ) -> dict[str, Any]:
        """Deliver a transcription result to the downstream webhook.

        Args:
            result: Transcript produced for the call.
            record: The originating call record.

        Returns:
            Parsed JSON response, or ``{"message": <text>}`` for non-JSON
            responses.

        Raises:
            ConfigurationError: If no webhook URL is configured.
            DeliveryTimeoutError: If the webhook does not answer in time.
            DeliveryError: On network failure or a non-success status.
        """
        if not self.webhook_url:
            raise ConfigurationError(
                "N8N_WEBHOOK_URL is not configured",
                call_id=record.call_id,
                setting="N8N_WEBHOOK_URL",
            )

        payload = build_payload(result, record)
        logger.debug(
            "Forwarding transcription (%d words)",
            payload["word_count"],
            extra={"call_id": record.call_id},
        )

        try:
            response = await self._client.post(
                self.webhook_url, json=payload, timeout=self.timeout
            )
        except httpx.TimeoutException as exc:
            raise DeliveryTimeoutError(
                f"Result delivery timed out after {self.timeout}s",
                call_id=record.call_id,
            ) from exc
        except httpx.RequestError as exc:
            raise DeliveryError(
                f"Result delivery failed: {exc}", call_id=record.call_id
            ) from exc

        if not response.is_success:
            raise DeliveryError(
                f"Result delivery failed: HTTP {response.status_code} - "
                f"{response.text[:500]}",
                call_id=record.call_id,
                status_code=response.status_code,
            )

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                body = response.json()
            except ValueError:
                return {"message": response.text}
            return body if isinstance(body, dict) else {"data": body}
        return {"message": response.text}
