"""Tests for call_bridge.auth.credentials.CredentialManager."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from call_bridge.auth.credentials import TOKEN_PATH, CredentialManager
from call_bridge.utils.errors import ConfigurationError, CredentialError

BASE_URL = "https://pbx.example.com"
TOKEN_URL = f"{BASE_URL}{TOKEN_PATH}"


def _build_mock_client(handler) -> httpx.AsyncClient:
    """Create an AsyncClient backed by a MockTransport handler."""
    transport = httpx.MockTransport(handler)
    return httpx.AsyncClient(transport=transport)


def _token_handler(tokens: list[str], requests: list[httpx.Request]):
    """Return a handler that issues the given tokens in order."""
    issued = iter(tokens)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200, json={"errcode": 0, "errmsg": "SUCCESS", "access_token": next(issued)}
        )

    return handler


def _failing_handler(requests: list[httpx.Request], status_code: int = 500):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="upstream error")

    return handler


def _manager(handler, **kwargs) -> CredentialManager:
    options = {
        "base_url": BASE_URL,
        "client_id": "client-id",
        "client_secret": "client-secret",
    }
    options.update(kwargs)
    return CredentialManager(client=_build_mock_client(handler), **options)


class TestCredentialManagerInit:
    """Tests for construction and configuration properties."""

    def test_unknown_mode_raises_configuration_error(self):
        """An unsupported token mode is rejected at construction."""
        with pytest.raises(ConfigurationError, match="Unknown token mode"):
            CredentialManager(mode="sometimes")

    def test_strips_trailing_slash(self):
        manager = CredentialManager(base_url=f"{BASE_URL}/")
        assert manager.base_url == BASE_URL

    def test_is_configured_with_static_token_only(self):
        manager = CredentialManager(static_token="static")
        assert manager.has_credentials is False
        assert manager.is_configured is True

    def test_not_configured_without_token_or_credentials(self):
        assert CredentialManager().is_configured is False

    def test_compute_retry_delay_is_capped_exponential(self):
        delays = [CredentialManager.compute_retry_delay(n, 1.0, 30.0) for n in range(1, 8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


class TestFetchToken:
    """Tests for CredentialManager.fetch_token()."""

    async def test_sends_credentials_as_json(self):
        """The token request posts username/password with the OpenAPI agent."""
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests))

        token = await manager.fetch_token()

        assert token == "tok-1"
        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == TOKEN_URL
        assert request.headers["user-agent"] == "OpenAPI"
        assert json.loads(request.content) == {
            "username": "client-id",
            "password": "client-secret",
        }
        await manager.close()

    async def test_missing_credentials_raise_configuration_error(self):
        manager = CredentialManager(base_url=BASE_URL)
        with pytest.raises(ConfigurationError, match="is not configured"):
            await manager.fetch_token()

    async def test_error_envelope_raises_with_errcode(self):
        """A nonzero errcode is a failure even with HTTP 200."""

        def handler(request):
            return httpx.Response(
                200, json={"errcode": 10001, "errmsg": "invalid client"}
            )

        manager = _manager(handler)
        with pytest.raises(CredentialError, match="invalid client") as exc_info:
            await manager.fetch_token()
        assert exc_info.value.errcode == 10001
        await manager.close()

    async def test_missing_access_token_raises(self):
        manager = _manager(lambda request: httpx.Response(200, json={"errcode": 0}))
        with pytest.raises(CredentialError, match="No access_token"):
            await manager.fetch_token()
        await manager.close()

    async def test_http_error_status_raises(self):
        manager = _manager(_failing_handler([], status_code=503))
        with pytest.raises(CredentialError, match="status 503"):
            await manager.fetch_token()
        await manager.close()

    async def test_timeout_raises_credential_error(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        manager = _manager(handler)
        with pytest.raises(CredentialError, match="timed out"):
            await manager.fetch_token()
        await manager.close()


class TestRefresh:
    """Tests for CredentialManager.refresh() and its scheduling."""

    async def test_success_stores_token_and_schedules_next_refresh(self):
        """A successful refresh resets failures and schedules the interval."""
        manager = _manager(_token_handler(["tok-1"], []), refresh_interval=1500)
        manager.state.consecutive_failures = 2

        assert await manager.refresh() is True

        assert manager.state.access_token == "tok-1"
        assert manager.state.last_refresh is not None
        assert manager.state.consecutive_failures == 0
        assert manager.state.refresh_in_progress is False
        assert manager.next_refresh_delay == 1500
        await manager.close()

    async def test_failure_increments_counter_and_schedules_backoff(self):
        manager = _manager(_failing_handler([]))

        assert await manager.refresh() is False

        assert manager.state.consecutive_failures == 1
        assert manager.state.refresh_in_progress is False
        assert manager.next_refresh_delay == 1.0
        await manager.close()

    async def test_failed_refresh_keeps_previous_token(self):
        manager = _manager(_failing_handler([]), static_token="still-good")

        await manager.refresh()

        assert manager.state.access_token == "still-good"
        await manager.close()

    async def test_backoff_increases_until_failure_ceiling(self):
        """Retry delays grow strictly, then the counter resets at the ceiling."""
        requests: list[httpx.Request] = []
        manager = _manager(
            _failing_handler(requests),
            max_failures=3,
            retry_base_delay=1.0,
            retry_max_delay=30.0,
            refresh_interval=1500,
        )

        delays = []
        for _ in range(2):
            await manager.refresh(retry=True)
            delays.append(manager.next_refresh_delay)
        assert delays == [1.0, 2.0]
        assert manager.state.consecutive_failures == 2

        await manager.refresh(retry=True)

        assert manager.state.consecutive_failures == 0
        assert manager.next_refresh_delay == 1500
        assert len(requests) == 3
        await manager.close()

    async def test_ceiling_logs_manual_intervention(self, caplog):
        manager = _manager(_failing_handler([]), max_failures=1)

        await manager.refresh()

        assert "manual intervention required" in caplog.text
        await manager.close()

    async def test_in_progress_refresh_is_skipped(self):
        """A top-level refresh returns immediately while one is in flight."""
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests))
        manager.state.refresh_in_progress = True

        assert await manager.refresh() is False
        assert requests == []
        await manager.close()

    async def test_scheduled_retry_bypasses_guard(self):
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests))
        manager.state.refresh_in_progress = True

        assert await manager.refresh(retry=True) is True
        assert len(requests) == 1
        assert manager.state.refresh_in_progress is False
        await manager.close()

    async def test_concurrent_refreshes_fetch_once(self):
        requests: list[httpx.Request] = []
        issued = iter(["tok-1", "tok-2"])

        async def handler(request):
            requests.append(request)
            await asyncio.sleep(0)
            return httpx.Response(200, json={"errcode": 0, "access_token": next(issued)})

        manager = _manager(handler)

        results = await asyncio.gather(manager.refresh(), manager.refresh())

        assert sorted(results) == [False, True]
        assert len(requests) == 1
        assert manager.state.access_token == "tok-1"
        await manager.close()

    async def test_missing_credentials_do_not_count_as_failure(self):
        manager = CredentialManager(base_url=BASE_URL, static_token="static")

        assert await manager.refresh() is False
        assert manager.state.consecutive_failures == 0
        assert manager.next_refresh_delay is None
        await manager.close()

    async def test_fired_timer_runs_refresh(self):
        """The scheduled callback spawns a refresh with the retry flag."""
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests))
        manager.state.refresh_in_progress = True

        manager._fire(True)
        await asyncio.gather(*manager._tasks)

        assert manager.state.access_token == "tok-1"
        assert len(requests) == 1
        await manager.close()

    async def test_start_with_auto_refresh_fetches_token(self):
        manager = _manager(_token_handler(["tok-1"], []), auto_refresh=True)

        await manager.start()
        await asyncio.gather(*manager._tasks)

        assert manager.state.access_token == "tok-1"
        await manager.close()

    async def test_close_cancels_scheduled_refresh(self):
        manager = _manager(_token_handler(["tok-1"], []))
        await manager.refresh()
        assert manager.next_refresh_delay is not None

        await manager.close()

        assert manager.next_refresh_delay is None


class TestEnsureValid:
    """Tests for CredentialManager.ensure_valid() and get_token()."""

    async def test_static_token_used_without_request(self):
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests), static_token="static")

        assert await manager.ensure_valid() == "static"
        assert requests == []
        await manager.close()

    async def test_missing_token_is_fetched(self):
        manager = _manager(_token_handler(["tok-1"], []))

        assert await manager.ensure_valid() == "tok-1"
        await manager.close()

    async def test_stale_token_is_refreshed(self):
        manager = _manager(_token_handler(["tok-2"], []), refresh_interval=1500)
        manager.state.access_token = "tok-1"
        manager.state.last_refresh = datetime.now(UTC) - timedelta(seconds=1600)

        assert await manager.ensure_valid() == "tok-2"
        await manager.close()

    async def test_no_token_and_no_credentials_raises_configuration_error(self):
        manager = CredentialManager(base_url=BASE_URL)
        with pytest.raises(ConfigurationError, match="is not configured"):
            await manager.ensure_valid()
        await manager.close()

    async def test_failed_refresh_without_token_raises_credential_error(self):
        manager = _manager(_failing_handler([]))
        with pytest.raises(CredentialError, match="No PBX access token"):
            await manager.ensure_valid()
        await manager.close()

    async def test_waits_for_refresh_already_in_flight(self):
        """A caller with no token waits for the running refresh instead of failing."""
        requests: list[httpx.Request] = []

        async def handler(request):
            requests.append(request)
            await asyncio.sleep(0.01)
            return httpx.Response(200, json={"errcode": 0, "access_token": "tok-1"})

        manager = _manager(handler)
        in_flight = asyncio.create_task(manager.refresh())
        await asyncio.sleep(0)

        assert await manager.ensure_valid() == "tok-1"
        assert await in_flight is True
        assert len(requests) == 1
        await manager.close()

    async def test_wait_for_refresh_returns_when_idle(self):
        manager = CredentialManager()
        await manager.wait_for_refresh()
        await manager.close()


class TestPerRequestMode:
    """Tests for the per_request token mode."""

    async def test_every_caller_gets_a_fresh_token(self):
        requests: list[httpx.Request] = []
        manager = _manager(
            _token_handler(["tok-1", "tok-2", "tok-3"], requests), mode="per_request"
        )

        first = await manager.ensure_valid()
        second = await manager.get_token()

        assert (first, second) == ("tok-1", "tok-2")
        assert len(requests) == 2
        assert manager.state.access_token == ""
        await manager.close()

    async def test_refresh_is_a_noop(self):
        requests: list[httpx.Request] = []
        manager = _manager(_token_handler(["tok-1"], requests), mode="per_request")

        assert await manager.refresh() is True
        assert requests == []
        assert manager.next_refresh_delay is None
        await manager.close()

    async def test_start_does_not_schedule_refresh(self):
        manager = _manager(
            _token_handler(["tok-1"], []), mode="per_request", auto_refresh=True
        )

        await manager.start()

        assert manager._tasks == set()
        await manager.close()
