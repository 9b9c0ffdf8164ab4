"""Pytest configuration and fixtures."""

import os
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "service-role-test")

from contaflix.config.settings import get_settings  # noqa: E402
from contaflix.tools.baas_api import BaaSClient  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@dataclass
class FakeBaaS:
    """In-memory stand-in for BaaSClient that records every call.

    ``tables`` maps a table name to the rows every select returns. RPC and
    function results may be values, exceptions (raised) or callables taking
    the request body.
    """

    tables: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    rpc_results: dict[str, Any] = field(default_factory=dict)
    invoke_results: dict[str, Any] = field(default_factory=dict)
    update_results: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    delete_results: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    calls: list[tuple[Any, ...]] = field(default_factory=list)
    inserted: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    updated: list[tuple[str, dict[str, Any], dict[str, str]]] = field(default_factory=list)

    async def select(
        self,
        table: str,
        filters: dict[str, str] | None = None,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
        single: bool = False,
    ) -> Any:
        self.calls.append(("select", table, dict(filters or {}), order, limit))
        rows = list(self.tables.get(table, []))
        if limit is not None:
            rows = rows[:limit]
        if single:
            return rows[0] if rows else None
        return rows

    async def insert(
        self, table: str, rows: dict[str, Any] | list[dict[str, Any]], returning: bool = True
    ) -> list[dict[str, Any]]:
        batch = rows if isinstance(rows, list) else [rows]
        stored = self.inserted.setdefault(table, [])
        result = []
        for row in batch:
            saved = {"id": f"{table}-{len(stored) + 1}", **row}
            stored.append(saved)
            result.append(saved)
        self.calls.append(("insert", table, batch))
        return result if returning else []

    async def update(
        self, table: str, values: dict[str, Any], filters: dict[str, str]
    ) -> list[dict[str, Any]]:
        self.updated.append((table, values, dict(filters)))
        self.calls.append(("update", table, values, dict(filters)))
        return list(self.update_results.get(table, []))

    async def delete(self, table: str, filters: dict[str, str]) -> list[dict[str, Any]]:
        self.calls.append(("delete", table, dict(filters)))
        return list(self.delete_results.get(table, []))

    async def rpc(self, name: str, params: dict[str, Any] | None = None) -> Any:
        self.calls.append(("rpc", name, params or {}))
        return self._resolve(self.rpc_results.get(name), params)

    async def invoke(self, function: str, body: dict[str, Any] | None = None) -> Any:
        self.calls.append(("invoke", function, body or {}))
        return self._resolve(self.invoke_results.get(function), body)

    @staticmethod
    def _resolve(result: Any, body: Any) -> Any:
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(body)
        return result

    # Logging helpers come from the real client and run on the fake primitives.
    log_automation = BaaSClient.log_automation
    update_automation_log = BaaSClient.update_automation_log
    log_critical_event = BaaSClient.log_critical_event
    insert_audit_log = BaaSClient.insert_audit_log

    def calls_to(self, kind: str, target: str | None = None) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == kind and (target is None or c[1] == target)]

    def updates_to(self, table: str) -> list[tuple[str, dict[str, Any], dict[str, str]]]:
        return [u for u in self.updated if u[0] == table]


@pytest.fixture
def baas() -> FakeBaaS:
    return FakeBaaS()


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.request = AsyncMock()
    client.aclose = AsyncMock()
    return client
