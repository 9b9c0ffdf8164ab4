"""Fiscal obligation tracking."""

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Any

import structlog

from contaflix.tools.baas_api import BaaSClient, eq, lt

logger = structlog.get_logger(__name__)

UPCOMING_WINDOW = timedelta(days=7)
PRIORITIES = ("alta", "media", "baixa")


@dataclass
class ObligationStatus:
    client_id: str
    marked_overdue: int
    upcoming: list[dict[str, Any]] = field(default_factory=list)
    overdue: list[dict[str, Any]] = field(default_factory=list)
    by_status: dict[str, int] = field(default_factory=dict)
    by_priority: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _deadline(row: dict[str, Any]) -> date | None:
    try:
        return date.fromisoformat(str(row.get("prazo"))[:10])
    except ValueError:
        return None


class ObligationTracker:
    def __init__(self, baas: BaaSClient):
        self._baas = baas
        self._logger = logger.bind(component="obligations")

    async def refresh(self, client_id: str, today: date | None = None) -> ObligationStatus:
        """Flag missed deadlines and summarize what is due.

        Pending obligations whose deadline has passed become ``atrasado``.
        Priority counts only cover obligations not yet concluded.
        """
        today = today or date.today()
        marked = await self._baas.update(
            "obrigacoes_fiscais",
            {"status": "atrasado"},
            {"client_id": eq(client_id), "status": eq("pendente"), "prazo": lt(today)},
        )
        if marked:
            self._logger.warning("obligations_overdue", client_id=client_id, count=len(marked))

        rows = await self._baas.select(
            "obrigacoes_fiscais", {"client_id": eq(client_id)}, order="prazo.asc"
        )
        open_rows = [r for r in rows if r.get("status") != "concluido"]
        horizon = today + UPCOMING_WINDOW

        upcoming = []
        for row in open_rows:
            deadline = _deadline(row)
            if deadline is not None and today <= deadline <= horizon:
                upcoming.append(row)

        priorities = Counter(str(r.get("prioridade")) for r in open_rows)
        return ObligationStatus(
            client_id=client_id,
            marked_overdue=len(marked),
            upcoming=upcoming,
            overdue=[r for r in rows if r.get("status") == "atrasado"],
            by_status=dict(Counter(str(r.get("status")) for r in rows)),
            by_priority={p: priorities.get(p, 0) for p in PRIORITIES},
        )
