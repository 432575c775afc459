"""Call recording retrieval from the PBX.

Resolves a CallRecord to raw audio bytes. Protocol priority:

1. A direct recording URL, fetched as-is without a token.
2. A recording id, resolved through the PBX OpenAPI.
3. A recording filename, resolved the same way.

For (2) and (3) the ``two_step`` mode asks the PBX for a short-lived
``download_resource_url`` and then fetches it; the ``direct`` mode downloads
from the API endpoint in a single request. A rejected token triggers exactly
one credential refresh and one replay of the whole sequence.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin

import httpx

from call_bridge.auth.credentials import CredentialManager
from call_bridge.calls.normalizer import (
    RECORDING_DOWNLOAD_PATH,
    CallRecord,
    build_download_url,
)
from call_bridge.utils.errors import RecordingFetchError, TokenExpiredError

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUS_CODES = {401, 403}
# PBX OpenAPI errcodes meaning the access token is invalid or expired.
TOKEN_EXPIRED_ERRCODES = frozenset({10004, 10005, 10006})
ERROR_BODY_CONTENT_TYPES = ("json", "text")
MAX_ERROR_BODY_CHARS = 500


def _body_snippet(response: httpx.Response) -> str:
    return response.content[:MAX_ERROR_BODY_CHARS].decode("utf-8", errors="replace")


def _is_token_error(body: object) -> bool:
    """Return True if a PBX error envelope signals an expired token."""
    if not isinstance(body, dict):
        return False
    errcode = body.get("errcode")
    if errcode in (0, None):
        return False
    try:
        if int(errcode) in TOKEN_EXPIRED_ERRCODES:
            return True
    except (TypeError, ValueError):
        pass
    errmsg = str(body.get("errmsg", "")).lower()
    return "token" in errmsg and ("expire" in errmsg or "invalid" in errmsg)


class RecordingRetriever:
    """Downloads call recordings, recovering once from token expiry.

    Args:
        credentials: Shared CredentialManager supplying PBX tokens.
        base_url: PBX API base URL.
        mode: ``two_step`` (resolve then download) or ``direct``.
        resolve_timeout: Timeout in seconds for the resolve request.
        download_timeout: Timeout in seconds for the byte transfer.
        min_bytes: Responses smaller than this are treated as error bodies.
        client: Optional shared httpx client (created if not provided).
    """

    def __init__(
        self,
        credentials: CredentialManager,
        base_url: str = "",
        mode: str = "two_step",
        resolve_timeout: float = 30.0,
        download_timeout: float = 120.0,
        min_bytes: int = 1000,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.mode = mode
        self.resolve_timeout = resolve_timeout
        self.download_timeout = download_timeout
        self.min_bytes = min_bytes
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, record: CallRecord) -> bytes:
        """Download the recording referenced by ``record``.

        Args:
            record: Normalized call record with at least one recording field.

        Returns:
            Raw audio bytes.

        Raises:
            RecordingFetchError: On missing references, HTTP failures, error
                bodies, or undersized responses.
            TokenExpiredError: If the token is still rejected after one
                refresh.
        """
        if record.recording_url:
            logger.debug("Using direct recording URL", extra={"call_id": record.call_id})
            return await self._download(record.recording_url, record.call_id)

        if not (record.recording_id or record.recording_filename):
            raise RecordingFetchError(
                "No recording URL, recording ID or filename available",
                call_id=record.call_id,
                transient=False,
            )
        if not self.base_url:
            raise RecordingFetchError(
                "YEASTAR_BASE_URL is not configured",
                call_id=record.call_id,
                transient=False,
            )

        token = await self._credentials.ensure_valid()
        try:
            return await self._fetch_via_api(record, token)
        except TokenExpiredError as exc:
            logger.warning(
                "PBX rejected access token, refreshing and retrying once: %s",
                exc,
                extra={"call_id": record.call_id},
            )
            if not await self._credentials.refresh():
                await self._credentials.wait_for_refresh()
            replay_token = await self._credentials.get_token()
            if replay_token == token:
                logger.warning(
                    "Token refresh produced no new token; replaying with the same one",
                    extra={"call_id": record.call_id},
                )
            return await self._fetch_via_api(record, replay_token)

    async def _fetch_via_api(self, record: CallRecord, token: str) -> bytes:
        if self.mode == "direct":
            url = None
            if not record.recording_id:
                url = build_download_url(record, self.base_url, token)
            return await self._download(
                url or self._api_url(record, token), record.call_id
            )

        resource_url = await self._resolve(record, token)
        return await self._download(
            resource_url, record.call_id, params={"access_token": token}
        )

    def _api_url(self, record: CallRecord, token: str) -> str:
        request = httpx.Request(
            "GET",
            f"{self.base_url}{RECORDING_DOWNLOAD_PATH}",
            params=self._reference_params(record, token),
        )
        return str(request.url)

    @staticmethod
    def _reference_params(record: CallRecord, token: str) -> dict[str, str]:
        if record.recording_id:
            return {"recording_id": record.recording_id, "access_token": token}
        return {"file": record.recording_filename, "access_token": token}

    async def _resolve(self, record: CallRecord, token: str) -> str:
        """Exchange a recording reference for a short-lived resource URL.

        Raises:
            TokenExpiredError: On 401/403 or an expired-token errcode.
            RecordingFetchError: On any other failure.
        """
        url = f"{self.base_url}{RECORDING_DOWNLOAD_PATH}"
        try:
            response = await self._client.get(
                url,
                params=self._reference_params(record, token),
                timeout=self.resolve_timeout,
            )
        except httpx.TimeoutException as exc:
            raise RecordingFetchError(
                f"Recording resolve timed out after {self.resolve_timeout}s",
                call_id=record.call_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise RecordingFetchError(
                f"Recording resolve failed: {exc}", call_id=record.call_id
            ) from exc

        if response.status_code in AUTH_FAILURE_STATUS_CODES:
            raise TokenExpiredError(
                f"Recording resolve rejected with HTTP {response.status_code}",
                call_id=record.call_id,
            )
        if response.status_code != 200:
            raise RecordingFetchError(
                f"Recording resolve failed with HTTP {response.status_code}: "
                f"{_body_snippet(response)}",
                call_id=record.call_id,
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise RecordingFetchError(
                f"Recording resolve returned non-JSON body: {_body_snippet(response)}",
                call_id=record.call_id,
                transient=False,
            ) from exc

        if _is_token_error(body):
            raise TokenExpiredError(
                f"Recording resolve rejected token: {body.get('errmsg', '')}",
                call_id=record.call_id,
                errcode=body.get("errcode"),
            )
        if isinstance(body, dict) and body.get("errcode") not in (0, None):
            raise RecordingFetchError(
                f"Recording resolve failed: {body.get('errmsg', 'unknown error')} "
                f"(errcode {body.get('errcode')})",
                call_id=record.call_id,
                transient=False,
            )

        resource = body.get("download_resource_url") if isinstance(body, dict) else None
        if not resource:
            raise RecordingFetchError(
                "No download_resource_url in resolve response",
                call_id=record.call_id,
                transient=False,
            )
        return urljoin(f"{self.base_url}/", resource)

    async def _download(
        self,
        url: str,
        call_id: str,
        params: dict[str, str] | None = None,
    ) -> bytes:
        """Fetch recording bytes and reject error bodies posing as audio.

        Raises:
            TokenExpiredError: On 401/403 or an expired-token error body.
            RecordingFetchError: On any other failure.
        """
        try:
            response = await self._client.get(
                url, params=params, timeout=self.download_timeout
            )
        except httpx.TimeoutException as exc:
            raise RecordingFetchError(
                f"Recording download timed out after {self.download_timeout}s",
                call_id=call_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise RecordingFetchError(
                f"Failed to download recording: {exc}", call_id=call_id
            ) from exc

        if response.status_code in AUTH_FAILURE_STATUS_CODES:
            raise TokenExpiredError(
                f"Recording download rejected with HTTP {response.status_code}",
                call_id=call_id,
            )
        if not response.is_success:
            raise RecordingFetchError(
                f"Failed to download recording: HTTP {response.status_code} - "
                f"{_body_snippet(response)}",
                call_id=call_id,
                status_code=response.status_code,
                transient=response.status_code >= 500,
            )

        content_type = response.headers.get("content-type", "").lower()
        if any(marker in content_type for marker in ERROR_BODY_CONTENT_TYPES):
            body: object = None
            try:
                body = response.json()
            except ValueError:
                pass
            if _is_token_error(body):
                raise TokenExpiredError(
                    f"Recording download rejected token: {_body_snippet(response)}",
                    call_id=call_id,
                )
            raise RecordingFetchError(
                f"Recording download returned {content_type} instead of audio: "
                f"{_body_snippet(response)}",
                call_id=call_id,
                status_code=response.status_code,
                transient=False,
            )

        data = response.content
        if len(data) < self.min_bytes:
            raise RecordingFetchError(
                f"Recording download too small ({len(data)} bytes): "
                f"{_body_snippet(response)}",
                call_id=call_id,
                status_code=response.status_code,
                transient=False,
            )

        logger.info(
            "Downloaded recording: %d bytes", len(data), extra={"call_id": call_id}
        )
        return data
