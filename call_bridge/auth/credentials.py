"""PBX access-token management.

The PBX OpenAPI issues bearer tokens that expire after roughly 30 minutes.
CredentialManager owns the single process-wide TokenState and is the only
code that mutates it. Two modes are supported:

* ``cached``: keep one token, refresh it on a timer inside its validity
  window, and retry failed refreshes with capped exponential backoff.
* ``per_request``: fetch a brand-new token for every caller and keep no
  shared state at all.

Refreshes are guarded by a best-effort single-flight flag. A scheduled
retry deliberately bypasses the flag, so a retry that overlaps an in-flight
top-level refresh can fetch a token twice.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx

from call_bridge.utils.errors import ConfigurationError, CredentialError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/openapi/v1.0/get_token"
DEFAULT_REFRESH_INTERVAL = 25 * 60
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_MAX_FAILURES = 3


@dataclass
class TokenState:
    """Mutable credential state shared by every in-flight call."""

    access_token: str = ""
    last_refresh: datetime | None = None
    consecutive_failures: int = 0
    refresh_in_progress: bool = False


class CredentialManager:
    """Owns the PBX access token and its refresh schedule.

    Args:
        base_url: PBX API base URL.
        client_id: OpenAPI client id (sent as ``username``).
        client_secret: OpenAPI client secret (sent as ``password``).
        static_token: Initial token from configuration, if any.
        mode: ``cached`` or ``per_request``.
        auto_refresh: Fetch a token as soon as start() runs.
        refresh_interval: Seconds between unconditional refreshes.
        retry_base_delay: Base delay for failed-refresh backoff.
        retry_max_delay: Cap for failed-refresh backoff.
        max_failures: Consecutive failures before giving up until the next
            regular refresh.
        timeout: Timeout in seconds for the token request.
        client: Optional shared httpx client (created if not provided).
    """

    def __init__(
        self,
        base_url: str = "",
        client_id: str = "",
        client_secret: str = "",
        static_token: str = "",
        mode: str = "cached",
        auto_refresh: bool = False,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        max_failures: int = DEFAULT_MAX_FAILURES,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if mode not in ("cached", "per_request"):
            raise ConfigurationError(f"Unknown token mode: '{mode}'", setting="TOKEN_MODE")
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.auto_refresh = auto_refresh
        self.refresh_interval = refresh_interval
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_failures = max_failures
        self.timeout = timeout
        self.state = TokenState(access_token=static_token)

        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None
        self._timer: asyncio.TimerHandle | None = None
        self._next_delay: float | None = None
        self._tasks: set[asyncio.Task] = set()
        self._refresh_done: asyncio.Event | None = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.base_url and self.client_id and self.client_secret)

    @property
    def is_configured(self) -> bool:
        """True when a token is held or can be fetched."""
        return bool(self.state.access_token) or self.has_credentials

    @property
    def next_refresh_delay(self) -> float | None:
        """Delay of the currently scheduled refresh, or None."""
        return self._next_delay if self._timer is not None else None

    @staticmethod
    def compute_retry_delay(failures: int, base: float, cap: float) -> float:
        """Backoff before refresh retry number ``failures`` (1-based)."""
        return min(base * (2 ** (failures - 1)), cap)

    async def start(self) -> None:
        """Kick off the first refresh when auto-refresh is enabled."""
        if self.mode == "cached" and self.auto_refresh:
            logger.info("Starting PBX token auto-refresh")
            self._spawn(self.refresh())

    async def close(self) -> None:
        """Cancel pending refreshes and release the HTTP client."""
        self._cancel_timer()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def get_token(self) -> str:
        """Return the token a caller should use right now.

        In ``per_request`` mode this is always a freshly fetched token. In
        ``cached`` mode it is the held token, possibly empty.
        """
        if self.mode == "per_request":
            return await self.fetch_token()
        return self.state.access_token

    async def ensure_valid(self) -> str:
        """Return a usable token, refreshing first if it is missing or stale.

        With no token held, a refresh already in flight is awaited.

        Raises:
            ConfigurationError: If no token is held and no client
                credentials are configured.
            CredentialError: If no token is held and the refresh failed.
        """
        if self.mode == "per_request":
            return await self.fetch_token()

        if self._is_stale() and self.has_credentials:
            await self.refresh()
            if not self.state.access_token:
                await self.wait_for_refresh()

        token = self.state.access_token
        if token:
            return token
        if not self.has_credentials:
            raise ConfigurationError(
                "PBX access token is not configured; set YEASTAR_API_TOKEN "
                "or YEASTAR_CLIENT_ID/YEASTAR_CLIENT_SECRET",
                setting="YEASTAR_API_TOKEN",
            )
        raise CredentialError("No PBX access token available after refresh")

    async def wait_for_refresh(self) -> None:
        """Block until the refresh currently in flight, if any, has finished."""
        done = self._refresh_done
        if done is not None and not done.is_set():
            logger.debug("Waiting for in-flight token refresh")
            await done.wait()

    def _is_stale(self) -> bool:
        if not self.state.access_token:
            return True
        last = self.state.last_refresh
        if last is None:
            # Static tokens carry no issue time; trust them until rejected.
            return False
        age = (datetime.now(UTC) - last).total_seconds()
        return age >= self.refresh_interval

    async def refresh(self, retry: bool = False) -> bool:
        """Fetch a new token and update the shared state.

        A top-level call returns immediately while another refresh is in
        flight; a scheduled retry (``retry=True``) always proceeds.

        Args:
            retry: True when invoked by the backoff scheduler.

        Returns:
            True if a new token was stored, False otherwise.
        """
        if self.mode == "per_request":
            return True
        if self.state.refresh_in_progress and not retry:
            logger.debug("Token refresh already in progress, skipping")
            return False

        self.state.refresh_in_progress = True
        done = self._refresh_done = asyncio.Event()
        try:
            token = await self.fetch_token()
        except ConfigurationError as exc:
            logger.warning("Token refresh skipped: %s", exc)
            return False
        except CredentialError as exc:
            self._record_failure(exc)
            return False
        else:
            self.state.access_token = token
            self.state.last_refresh = datetime.now(UTC)
            self.state.consecutive_failures = 0
        finally:
            self.state.refresh_in_progress = False
            done.set()

        logger.info("PBX access token refreshed")
        self._schedule(self.refresh_interval, retry=False)
        return True

    def _record_failure(self, exc: CredentialError) -> None:
        self.state.consecutive_failures += 1
        failures = self.state.consecutive_failures
        if failures < self.max_failures:
            delay = self.compute_retry_delay(
                failures, self.retry_base_delay, self.retry_max_delay
            )
            logger.warning(
                "Token refresh failed (%d/%d), retrying in %.1fs: %s",
                failures,
                self.max_failures,
                delay,
                exc,
                extra={"attempt": failures, "error": str(exc)},
            )
            self._schedule(delay, retry=True)
            return

        logger.error(
            "Token refresh failed %d times, manual intervention required: %s",
            failures,
            exc,
            extra={"attempt": failures, "error": str(exc)},
        )
        self.state.consecutive_failures = 0
        self._schedule(self.refresh_interval, retry=False)

    async def fetch_token(self) -> str:
        """Request a new token from the PBX token endpoint.

        Raises:
            ConfigurationError: If base URL or client credentials are missing.
            CredentialError: On network failure, HTTP error, or error envelope.
        """
        if not self.has_credentials:
            raise ConfigurationError(
                "YEASTAR_CLIENT_ID/YEASTAR_CLIENT_SECRET is not configured",
                setting="YEASTAR_CLIENT_ID",
            )

        url = f"{self.base_url}{TOKEN_PATH}"
        try:
            response = await self._client.post(
                url,
                json={"username": self.client_id, "password": self.client_secret},
                headers={"User-Agent": "OpenAPI"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise CredentialError(f"Token request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise CredentialError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise CredentialError(
                f"Token request failed with status {response.status_code}: "
                f"{response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise CredentialError("Token response is not valid JSON") from exc

        errcode = body.get("errcode", 0) if isinstance(body, dict) else None
        if errcode not in (0, None):
            raise CredentialError(
                f"Token request rejected: {body.get('errmsg', 'unknown error')} "
                f"(errcode {errcode})",
                errcode=errcode,
            )

        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise CredentialError("No access_token in token response")
        return token

    def _schedule(self, delay: float, retry: bool) -> None:
        """Replace any pending refresh with one firing after ``delay``."""
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; token refresh not scheduled")
            return
        self._next_delay = delay
        self._timer = loop.call_later(delay, self._fire, retry)

    def _fire(self, retry: bool) -> None:
        self._timer = None
        self._next_delay = None
        self._spawn(self.refresh(retry=retry))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._next_delay = None

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
