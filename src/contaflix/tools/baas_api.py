"""BaaS client for the hosted Postgres REST/RPC surface and serverless functions."""

import asyncio
from datetime import UTC, datetime
from typing import Any, cast

import httpx
import structlog

from contaflix.config import get_settings

logger = structlog.get_logger(__name__)

Row = dict[str, Any]
Filters = dict[str, str]


class BaaSError(Exception):
    """Base exception for BaaS errors."""

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class AuthenticationError(BaaSError):
    """Service key rejected."""

    pass


class RateLimitError(BaaSError):
    """Rate limit exceeded."""

    def __init__(self, message: str, retry_after: int, details: Any = None):
        super().__init__(message, status_code=429, details=details)
        self.retry_after = retry_after


# === PostgREST filter helpers ===


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def eq(value: Any) -> str:
    return f"eq.{_literal(value)}"


def neq(value: Any) -> str:
    return f"neq.{_literal(value)}"


def gt(value: Any) -> str:
    return f"gt.{_literal(value)}"


def gte(value: Any) -> str:
    return f"gte.{_literal(value)}"


def lt(value: Any) -> str:
    return f"lt.{_literal(value)}"


def lte(value: Any) -> str:
    return f"lte.{_literal(value)}"


def like(pattern: str) -> str:
    return f"like.{pattern}"


def in_(values: list[Any]) -> str:
    return "in.(" + ",".join(_literal(v) for v in values) + ")"


def is_(value: Any) -> str:
    return f"is.{_literal(value)}"


def within(column: str, start: Any, end: Any) -> Filters:
    """Half-open ``start <= column < end`` range as a PostgREST ``and`` filter."""
    return {"and": f"({column}.gte.{_literal(start)},{column}.lt.{_literal(end)})"}


def between(column: str, start: Any, end: Any) -> Filters:
    """Inclusive ``start <= column <= end`` range."""
    return {"and": f"({column}.gte.{_literal(start)},{column}.lte.{_literal(end)})"}


class BaaSClient:
    """Async client for the BaaS REST, RPC and functions endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.supabase_url).rstrip("/")
        self._service_key = service_key or settings.supabase_service_role_key.get_secret_value()
        self._timeout = timeout if timeout is not None else settings.supabase_timeout
        self._max_retries = (
            max_retries if max_retries is not None else settings.supabase_max_retries
        )

        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BaaSClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _get_headers(self, prefer: str | None = None, single: bool = False) -> dict[str, str]:
        """Get request headers with the service key."""
        headers = {
            "Content-Type": "application/json",
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        if single:
            headers["Accept"] = "application/vnd.pgrst.object+json"
        return headers

    # === Generic Request Method ===

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
        retry_count: int = 0,
    ) -> Any:
        """Make an authenticated request with retry on transport errors."""
        client = await self._get_client()

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers=headers or self._get_headers(),
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self._request(method, path, params, json, headers, retry_count + 1)
            raise BaaSError(f"Request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                "Service key rejected", status_code=response.status_code
            )

        if response.status_code == 429:
            retry_after = int(response.headers.get("Retry-After", "60"))
            raise RateLimitError(
                f"Rate limited, retry after {retry_after}s",
                retry_after=retry_after,
                details={"retry_after": retry_after},
            )

        if response.status_code >= 400:
            try:
                error_detail = response.json() if response.content else {}
            except ValueError:
                error_detail = {"raw": response.text[:500] if response.text else "empty response"}
            raise BaaSError(
                f"API error: {response.status_code}",
                status_code=response.status_code,
                details=error_detail,
            )

        return response.json() if response.content else None

    # === Table API ===

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
        single: bool = False,
    ) -> Any:
        """Select rows from a table.

        Args:
            table: Table name.
            filters: Mapping of column to PostgREST filter (``eq.x``, ``lt.y``...).
            columns: PostgREST select expression, embedded resources allowed.
            order: Order expression, e.g. ``"priority.asc,scheduled_at.asc"``.
            limit: Maximum rows to return.
            single: Return one row (or None) instead of a list.
        """
        params: dict[str, Any] = {"select": columns}
        if filters:
            params.update(filters)
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit

        if single:
            try:
                result = await self._request(
                    "GET",
                    f"/rest/v1/{table}",
                    params=params,
                    headers=self._get_headers(single=True),
                )
            except BaaSError as e:
                # PostgREST answers 406 when zero (or several) rows match.
                if e.status_code == 406:
                    return None
                raise
            return cast(Row, result) if isinstance(result, dict) else None

        result = await self._request("GET", f"/rest/v1/{table}", params=params)
        return cast(list[Row], result) if isinstance(result, list) else []

    async def insert(
        self, table: str, rows: Row | list[Row], returning: bool = True
    ) -> list[Row]:
        """Insert one or more rows."""
        prefer = "return=representation" if returning else "return=minimal"
        result = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=rows,
            headers=self._get_headers(prefer=prefer),
        )
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            return [result]
        return []

    async def update(self, table: str, values: Row, filters: Filters) -> list[Row]:
        """Update rows matching the filters."""
        if not filters:
            raise BaaSError("Refusing to update without filters")
        result = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=dict(filters),
            json=values,
            headers=self._get_headers(prefer="return=representation"),
        )
        return result if isinstance(result, list) else []

    async def delete(self, table: str, filters: Filters) -> list[Row]:
        """Delete rows matching the filters."""
        if not filters:
            raise BaaSError("Refusing to delete without filters")
        result = await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=dict(filters),
            headers=self._get_headers(prefer="return=representation"),
        )
        return result if isinstance(result, list) else []

    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        """Call a Postgres function."""
        return await self._request("POST", f"/rest/v1/rpc/{name}", json=params or {})

    async def invoke(self, function: str, body: dict[str, Any] | None = None) -> Any:
        """Invoke a named serverless function with a JSON body."""
        return await self._request("POST", f"/functions/v1/{function}", json=body or {})

    # === Logging tables ===

    async def log_automation(
        self,
        process_type: str,
        status: str,
        client_id: str | None = None,
        records_processed: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Row:
        """Insert an automation_logs row and return it."""
        row: Row = {
            "process_type": process_type,
            "status": status,
            "started_at": datetime.now(UTC).isoformat(),
        }
        if client_id is not None:
            row["client_id"] = client_id
        if records_processed is not None:
            row["records_processed"] = records_processed
        if metadata is not None:
            row["metadata"] = metadata
        rows = await self.insert("automation_logs", row)
        return rows[0] if rows else {}

    async def update_automation_log(self, log_id: str, values: Row) -> None:
        await self.update("automation_logs", values, {"id": eq(log_id)})

    async def log_critical_event(
        self,
        event_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
        severity: str = "info",
    ) -> None:
        """Record an audit event through the ``log_critical_event`` RPC."""
        await self.rpc(
            "log_critical_event",
            {
                "p_event_type": event_type,
                "p_message": message,
                "p_metadata": metadata or {},
                "p_severity": severity,
            },
        )

    async def insert_audit_log(
        self,
        table_name: str,
        operation: str,
        record_id: str,
        new_values: dict[str, Any],
        metadata: dict[str, Any] | None = None,
        source: str = "contaflix_worker",
    ) -> None:
        await self.insert(
            "audit_logs",
            {
                "table_name": table_name,
                "operation": operation,
                "record_id": record_id,
                "new_values": new_values,
                "metadata": metadata or {},
                "severity": "info",
                "source": source,
            },
            returning=False,
        )
