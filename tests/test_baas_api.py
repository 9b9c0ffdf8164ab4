"""Tests for the BaaS API client."""

from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from contaflix.tools.baas_api import (
    AuthenticationError,
    BaaSClient,
    BaaSError,
    RateLimitError,
    between,
    eq,
    in_,
    is_,
    lt,
    within,
)


@pytest.fixture
def client():
    """Create a BaaSClient instance."""
    return BaaSClient(base_url="http://localhost:54321/", service_key="key-123", max_retries=2)


def _response(status_code: int = 200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"x" if payload is not None else b""
    response.json.return_value = payload
    response.text = ""
    response.headers = headers or {}
    return response


class TestFilters:
    """Tests for the PostgREST filter helpers."""

    def test_scalar_filters(self):
        assert eq("abc") == "eq.abc"
        assert lt(date(2026, 4, 30)) == "lt.2026-04-30"
        assert is_(None) == "is.null"
        assert eq(True) == "eq.true"

    def test_in_filter(self):
        assert in_(["pendente", "atrasado"]) == "in.(pendente,atrasado)"

    def test_within_is_half_open(self):
        assert within("data_competencia", "2026-03-01", "2026-04-01") == {
            "and": "(data_competencia.gte.2026-03-01,data_competencia.lt.2026-04-01)"
        }

    def test_between_is_inclusive(self):
        assert between("prazo", date(2026, 1, 1), date(2026, 3, 31)) == {
            "and": "(prazo.gte.2026-01-01,prazo.lte.2026-03-31)"
        }


class TestBaaSClientInit:
    """Tests for BaaSClient initialization."""

    def test_init_strips_trailing_slash(self, client):
        assert client.base_url == "http://localhost:54321"

    def test_init_from_settings(self):
        client = BaaSClient()

        assert client.base_url == "http://localhost:54321"
        assert client._service_key == "service-role-test"

    def test_headers_carry_service_key(self, client):
        headers = client._get_headers(prefer="return=minimal", single=True)

        assert headers["apikey"] == "key-123"
        assert headers["Authorization"] == "Bearer key-123"
        assert headers["Prefer"] == "return=minimal"
        assert headers["Accept"] == "application/vnd.pgrst.object+json"


class TestRequests:
    """Tests for the table, RPC and function calls."""

    @pytest.mark.asyncio
    async def test_select_builds_query(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(return_value=_response(payload=[{"id": "1"}]))
            mock_get.return_value = mock_http

            rows = await client.select(
                "processing_queue",
                {"status": eq("pending")},
                order="priority.asc",
                limit=5,
            )

        assert rows == [{"id": "1"}]
        kwargs = mock_http.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "/rest/v1/processing_queue"
        assert kwargs["params"] == {
            "select": "*",
            "status": "eq.pending",
            "order": "priority.asc",
            "limit": 5,
        }

    @pytest.mark.asyncio
    async def test_select_single_returns_none_on_406(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(return_value=_response(406, payload={}))
            mock_get.return_value = mock_http

            assert await client.select("accounting_clients", single=True) is None

    @pytest.mark.asyncio
    async def test_insert_wraps_single_row(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(return_value=_response(201, payload={"id": "n1"}))
            mock_get.return_value = mock_http

            rows = await client.insert("notifications", {"title": "x"})

        assert rows == [{"id": "n1"}]
        headers = mock_http.request.call_args.kwargs["headers"]
        assert headers["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_update_without_filters_is_refused(self, client):
        with pytest.raises(BaaSError, match="without filters"):
            await client.update("processing_queue", {"status": "failed"}, {})

    @pytest.mark.asyncio
    async def test_rpc_and_invoke_paths(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(return_value=_response(payload={"ok": True}))
            mock_get.return_value = mock_http

            await client.rpc("check_overdue_payments")
            url = mock_http.request.call_args.kwargs["url"]
            assert url == "/rest/v1/rpc/check_overdue_payments"

            await client.invoke("send-email", {"to": "a@b.c"})
            kwargs = mock_http.request.call_args.kwargs
            assert kwargs["url"] == "/functions/v1/send-email"
            assert kwargs["json"] == {"to": "a@b.c"}


class TestErrors:
    """Tests for error mapping and retries."""

    @pytest.mark.asyncio
    async def test_auth_error(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(return_value=_response(401))
            mock_get.return_value = mock_http

            with pytest.raises(AuthenticationError):
                await client.select("automation_logs")

    @pytest.mark.asyncio
    async def test_rate_limit_error(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(
                return_value=_response(429, headers={"Retry-After": "12"})
            )
            mock_get.return_value = mock_http

            with pytest.raises(RateLimitError) as exc_info:
                await client.select("automation_logs")

        assert exc_info.value.retry_after == 12

    @pytest.mark.asyncio
    async def test_api_error_carries_details(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(
                return_value=_response(400, payload={"message": "bad column"})
            )
            mock_get.return_value = mock_http

            with pytest.raises(BaaSError) as exc_info:
                await client.select("automation_logs")

        assert exc_info.value.status_code == 400
        assert exc_info.value.details == {"message": "bad column"}

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, client):
        with (
            patch.object(client, "_get_client") as mock_get,
            patch("contaflix.tools.baas_api.asyncio.sleep", new=AsyncMock()) as mock_sleep,
        ):
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(
                side_effect=[httpx.ConnectError("down"), _response(payload=[])]
            )
            mock_get.return_value = mock_http

            assert await client.select("automation_logs") == []

        assert mock_http.request.call_count == 2
        mock_sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_transport_errors_exhaust_retries(self, client):
        with (
            patch.object(client, "_get_client") as mock_get,
            patch("contaflix.tools.baas_api.asyncio.sleep", new=AsyncMock()),
        ):
            mock_http = AsyncMock()
            mock_http.request = AsyncMock(side_effect=httpx.ConnectError("down"))
            mock_get.return_value = mock_http

            with pytest.raises(BaaSError, match="Request failed"):
                await client.select("automation_logs")

        assert mock_http.request.call_count == 3


class TestLoggingHelpers:
    """Tests for the automation and audit log helpers."""

    @pytest.mark.asyncio
    async def test_log_automation_inserts_row(self, baas):
        row = await baas.log_automation(
            "continuous_close", "completed", client_id="c1", metadata={"period": "2026-03"}
        )

        assert row["id"] == "automation_logs-1"
        assert row["process_type"] == "continuous_close"
        assert row["client_id"] == "c1"
        assert "records_processed" not in row

    @pytest.mark.asyncio
    async def test_log_critical_event_uses_rpc(self, baas):
        await baas.log_critical_event("task_completed", "done", {"task_id": "t1"})

        assert baas.calls_to("rpc") == [
            (
                "rpc",
                "log_critical_event",
                {
                    "p_event_type": "task_completed",
                    "p_message": "done",
                    "p_metadata": {"task_id": "t1"},
                    "p_severity": "info",
                },
            )
        ]
