"""Statistical and LLM-assisted anomaly detection on accounting data."""

import json
import statistics
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

import openai
import structlog

from contaflix.clients.openai_client import OpenAIClient
from contaflix.tools.baas_api import BaaSClient, eq

logger = structlog.get_logger(__name__)

MIN_HISTORY_PERIODS = 3
DEVIATION_LIMIT = 2
MARGIN_SHIFT_LIMIT = 0.1

HIGH_SEVERITIES = {"high", "high_positive", "high_negative"}

SYSTEM_PROMPT = (
    "Você é um especialista em análise contábil e detecção de anomalias financeiras."
)

ANALYSIS_PROMPT = """Analise os seguintes dados contábeis e identifique possíveis anomalias
ou padrões suspeitos:

Dados atuais: {current}
Histórico: {history}

Procure por:
1. Padrões incomuns nos valores
2. Inconsistências temporais
3. Proporções anômalas entre receitas e despesas
4. Indicadores de possíveis erros ou fraudes

Retorne um JSON com anomalias encontradas:
{{
  "ai_anomalies": [
    {{
      "type": "tipo_da_anomalia",
      "description": "descrição_detalhada",
      "severity": "low|medium|high",
      "confidence": 0.0-1.0,
      "recommendation": "recomendação_de_ação"
    }}
  ]
}}
"""


@dataclass
class Anomaly:
    type: str
    severity: str
    description: str
    confidence: float
    period: str | None = None
    current_value: float | None = None
    expected_range: tuple[float, float] | None = None
    expected_value: float | None = None
    recommendation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _num(row: dict[str, Any], key: str) -> float:
    return float(row.get(key) or 0)


def _margin(revenue: float, expenses: float) -> float:
    return (revenue - expenses) / revenue if revenue > 0 else 0.0


def _deviation_pct(current: float, mean: float) -> float:
    if mean == 0:
        return 0.0
    return abs(current - mean) / mean * 100


def detect_financial_anomalies(
    current: dict[str, Any], history: list[dict[str, Any]]
) -> list[Anomaly]:
    """Compare the current period with its history.

    Revenue and expenses outside mean +/- 2 population standard deviations
    are flagged, as is a profit margin shift larger than 10 points. Fewer
    than three history periods yields nothing.
    """
    if len(history) < MIN_HISTORY_PERIODS:
        return []

    anomalies: list[Anomaly] = []
    period = current.get("period")

    revenues = [_num(row, "revenue") for row in history]
    expenses = [_num(row, "expenses") for row in history]
    avg_revenue, std_revenue = statistics.fmean(revenues), statistics.pstdev(revenues)
    avg_expenses, std_expenses = statistics.fmean(expenses), statistics.pstdev(expenses)

    current_revenue = _num(current, "revenue")
    current_expenses = _num(current, "expenses")

    if abs(current_revenue - avg_revenue) > DEVIATION_LIMIT * std_revenue:
        above = current_revenue > avg_revenue
        pct = _deviation_pct(current_revenue, avg_revenue)
        anomalies.append(
            Anomaly(
                type="revenue_anomaly",
                severity="high_positive" if above else "high_negative",
                description=(
                    f"Receita {pct:.1f}% {'acima' if above else 'abaixo'} da média"
                ),
                confidence=0.85,
                period=period,
                current_value=current_revenue,
                expected_range=(
                    avg_revenue - DEVIATION_LIMIT * std_revenue,
                    avg_revenue + DEVIATION_LIMIT * std_revenue,
                ),
            )
        )

    if abs(current_expenses - avg_expenses) > DEVIATION_LIMIT * std_expenses:
        above = current_expenses > avg_expenses
        pct = _deviation_pct(current_expenses, avg_expenses)
        anomalies.append(
            Anomaly(
                type="expense_anomaly",
                severity="high_negative" if above else "medium",
                description=(
                    f"Despesas {pct:.1f}% {'acima' if above else 'abaixo'} da média"
                ),
                confidence=0.80,
                period=period,
                current_value=current_expenses,
                expected_range=(
                    avg_expenses - DEVIATION_LIMIT * std_expenses,
                    avg_expenses + DEVIATION_LIMIT * std_expenses,
                ),
            )
        )

    current_margin = _margin(current_revenue, current_expenses)
    avg_margin = statistics.fmean(
        _margin(_num(row, "revenue"), _num(row, "expenses")) for row in history
    )
    if abs(current_margin - avg_margin) > MARGIN_SHIFT_LIMIT:
        reduced = current_margin < avg_margin
        anomalies.append(
            Anomaly(
                type="margin_anomaly",
                severity="medium" if reduced else "low",
                description=(
                    f"Margem de lucro {'reduzida' if reduced else 'aumentada'} significativamente"
                ),
                confidence=0.75,
                period=period,
                current_value=current_margin,
                expected_value=avg_margin,
            )
        )

    return anomalies


def summarize(anomalies: list[Anomaly], data_points: int) -> dict[str, Any]:
    return {
        "total_anomalies": len(anomalies),
        "high_severity": sum(1 for a in anomalies if a.severity in HIGH_SEVERITIES),
        "medium_severity": sum(1 for a in anomalies if a.severity == "medium"),
        "low_severity": sum(1 for a in anomalies if a.severity == "low"),
        "analysis_date": datetime.now(UTC).isoformat(),
        "data_points_analyzed": data_points,
    }


def _anomaly_from_llm(item: Any, period: str | None) -> Anomaly | None:
    if not isinstance(item, dict) or not item.get("type"):
        return None
    try:
        confidence = float(item.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    return Anomaly(
        type=str(item["type"]),
        severity=str(item.get("severity", "low")),
        description=str(item.get("description", "")),
        confidence=confidence,
        period=period,
        recommendation=item.get("recommendation"),
    )


class AnomalyService:
    """Runs anomaly analysis for a client and logs it to ``automation_logs``."""

    def __init__(self, baas: BaaSClient, llm: OpenAIClient | None = None):
        self._baas = baas
        self._llm = llm
        self._logger = logger.bind(component="anomaly_detection")

    async def _llm_anomalies(
        self,
        current: dict[str, Any] | None,
        history: list[dict[str, Any]],
        period: str | None,
    ) -> list[Anomaly]:
        if self._llm is None:
            return []

        prompt = ANALYSIS_PROMPT.format(
            current=json.dumps(current or {}, default=str),
            history=json.dumps(history[:6], default=str),
        )
        try:
            parsed = await self._llm.generate_json(SYSTEM_PROMPT, prompt)
        except openai.APIError as e:
            self._logger.warning("llm_analysis_failed", error=str(e))
            return []
        if not parsed:
            return []

        items = parsed.get("ai_anomalies") or []
        if not isinstance(items, list):
            return []
        return [a for a in (_anomaly_from_llm(item, period) for item in items) if a]

    async def run(
        self,
        client_id: str,
        analysis_type: str = "financial",
        period: str | None = None,
    ) -> dict[str, Any]:
        if analysis_type not in ("financial", "documents"):
            raise ValueError(f"Unsupported analysis type: {analysis_type}")

        current: dict[str, Any] | None = None
        history: list[dict[str, Any]] = []

        if analysis_type == "financial":
            rows = await self._baas.select(
                "processed_accounting_data",
                {"client_id": eq(client_id)},
                order="period.desc",
                limit=12,
            )
            if rows:
                current, history = rows[0], rows[1:]
        else:
            rows = await self._baas.select(
                "client_documents",
                {"client_id": eq(client_id)},
                order="created_at.desc",
                limit=50,
            )
            history = rows

        if not rows:
            self._logger.info("insufficient_data", client_id=client_id)
            return {
                "success": True,
                "anomalies": [],
                "message": "Insufficient data for anomaly analysis",
            }

        anomalies: list[Anomaly] = []
        if current is not None:
            anomalies.extend(detect_financial_anomalies(current, history))
        anomalies.extend(await self._llm_anomalies(current, history, period))

        await self._baas.insert(
            "automation_logs",
            {
                "process_type": "anomaly_detection",
                "client_id": client_id,
                "status": "completed",
                "records_processed": len(rows),
                "metadata": {
                    "analysis_type": analysis_type,
                    "anomalies_found": len(anomalies),
                    "period": period,
                    "detection_methods": (
                        ["statistical", "ai_powered"] if self._llm else ["statistical"]
                    ),
                },
            },
            returning=False,
        )

        self._logger.info(
            "anomaly_analysis_completed",
            client_id=client_id,
            analysis_type=analysis_type,
            anomalies=len(anomalies),
        )
        return {
            "success": True,
            "anomalies": [a.to_dict() for a in anomalies],
            "analysis_summary": summarize(anomalies, len(rows)),
            "recommendations": [a.recommendation for a in anomalies if a.recommendation],
        }
