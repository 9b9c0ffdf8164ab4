"""Tests for the continuous close service."""

from datetime import date

import pytest

from contaflix.closing import (
    CloseError,
    ContinuousCloseService,
    _flatten,
    balance_sheet,
    check_balance,
    check_completeness,
    check_consistency,
    check_reconciliation,
    general_ledger,
    income_statement,
    period_bounds,
)
from contaflix.events import EventPublisher, EventType

CAIXA = {"codigo": "1.1.1.01", "nome": "Caixa", "natureza": "DEVEDORA", "ativo": True}
VENDAS = {"codigo": "3.1.01", "nome": "Receita de vendas", "tipo": "RECEITA", "ativo": True}
ALUGUEL = {"codigo": "4.2.01", "nome": "Aluguel", "tipo": "DESPESA", "ativo": True}


def _item(account_id, account, movement, amount):
    return {
        "conta_id": account_id,
        "tipo_movimento": movement,
        "valor": amount,
        "plano_contas": account,
    }


def _entries():
    return [
        {
            "id": "l1",
            "data_competencia": "2026-03-02",
            "status": "conciliado",
            "lancamentos_itens": [
                _item("caixa", CAIXA, "DEBITO", "1000.00"),
                _item("vendas", VENDAS, "CREDITO", "1000.00"),
            ],
        },
        {
            "id": "l2",
            "data_competencia": "2026-03-05",
            "status": "pendente",
            "lancamentos_itens": [
                _item("aluguel", ALUGUEL, "DEBITO", "300.00"),
                _item("caixa", CAIXA, "CREDITO", "300.00"),
            ],
        },
    ]


class TestPeriodBounds:
    def test_bounds(self):
        assert period_bounds("2026-03") == (date(2026, 3, 1), date(2026, 4, 1))
        assert period_bounds("2026-12") == (date(2026, 12, 1), date(2027, 1, 1))

    def test_invalid_period(self):
        with pytest.raises(CloseError):
            period_bounds("03/2026")


class TestValidations:
    """Tests for the individual close checks."""

    def test_balanced_entries(self):
        result = check_balance(_flatten(_entries()))

        assert result.passed is True
        assert result.details["total_debits"] == "1300.00"
        assert result.details["difference"] == "0.00"

    def test_unbalanced_entries(self):
        entries = _entries()
        entries[0]["lancamentos_itens"][1]["valor"] = "999.00"

        result = check_balance(_flatten(entries))

        assert result.passed is False
        assert result.severity == "error"
        assert result.details["difference"] == "1.00"

    def test_consistency_issues(self):
        entries = [
            {"id": "l1", "lancamentos_itens": []},
            {
                "id": "l2",
                "lancamentos_itens": [
                    _item("x", None, "DEBITO", "10"),
                    _item("y", {**ALUGUEL, "ativo": False}, "CREDITO", "10"),
                ],
            },
        ]

        result = check_consistency(entries, _flatten(entries))

        assert result.passed is False
        assert len(result.issues) == 3
        assert "sem itens" in result.issues[0]
        assert "inexistente" in result.issues[1]
        assert "inativa 4.2.01" in result.issues[2]

    def test_completeness_only_fails_when_strict(self):
        complete = check_completeness(_entries(), 2, date(2026, 3, 1), "complete")
        strict = check_completeness(_entries(), 2, date(2026, 3, 1), "strict")

        assert complete.passed is True
        assert complete.severity == "warning"
        assert len(complete.issues) == 2
        assert strict.passed is False

    def test_completeness_with_daily_entries(self):
        entries = [{"id": f"l{d}", "data_competencia": f"2026-03-{d:02d}"} for d in range(1, 17)]

        result = check_completeness(entries, 0, date(2026, 3, 1), "strict")

        assert result.passed is True
        assert result.issues == []

    def test_unreconciled_bank_entries(self):
        items = _flatten(_entries())

        complete = check_reconciliation(items, "complete")
        strict = check_reconciliation(items, "strict")

        assert complete.issues == ["Lançamento bancário l2 não conciliado"]
        assert complete.passed is True
        assert strict.passed is False


class TestReports:
    """Tests for the generated statements."""

    def test_general_ledger(self):
        ledger = general_ledger(_flatten(_entries()))

        assert [a["codigo"] for a in ledger] == ["1.1.1.01", "3.1.01", "4.2.01"]
        caixa = ledger[0]
        assert caixa["debitos"] == "1000.00"
        assert caixa["creditos"] == "300.00"
        assert caixa["saldo_devedor"] == "700.00"
        assert caixa["saldo_credor"] == "0.00"
        assert len(caixa["movimentos"]) == 2
        assert ledger[1]["saldo_credor"] == "1000.00"

    def test_balance_sheet(self):
        sheet = balance_sheet(_flatten(_entries()))

        assert sheet["ativo_circulante"] == "700.00"
        assert sheet["total_ativo"] == "700.00"
        assert sheet["total_passivo_pl"] == "0.00"

    def test_income_statement(self):
        dre = income_statement(_flatten(_entries()))

        assert dre["receita_bruta"] == "1000.00"
        assert dre["despesas_operacionais"] == "300.00"
        assert dre["resultado_bruto"] == "1000.00"
        assert dre["resultado_operacional"] == "700.00"
        assert dre["resultado_liquido"] == "700.00"


class TestContinuousCloseService:
    """Tests for the close workflow."""

    @pytest.mark.asyncio
    async def test_close_succeeds(self, baas):
        baas.tables["lancamentos_contabeis"] = _entries()
        publisher = EventPublisher()

        result = await ContinuousCloseService(baas, publisher).close("c1", "2026-03")

        assert result.success is True
        assert result.close_id.startswith("close_c1_2026-03_")
        assert set(result.generated_reports) == {"razao", "balanco", "dre"}
        assert [v.name for v in result.validation_results] == [
            "balance",
            "consistency",
            "completeness",
            "reconciliation",
        ]

        log = baas.inserted["automation_logs"][0]
        assert log["process_type"] == "continuous_close"
        assert log["status"] == "completed"
        assert log["records_processed"] == 2
        assert log["metadata"]["period"] == "2026-03"
        assert log["metadata"]["forced"] is False
        assert log["metadata"]["reports_generated"] == ["balanco", "dre", "razao"]

        _, _, filters, _, _ = baas.calls_to("select", "lancamentos_contabeis")[0]
        assert filters == {
            "client_id": "eq.c1",
            "and": "(data_competencia.gte.2026-03-01,data_competencia.lt.2026-04-01)",
        }
        assert [e.event_type for e in publisher.recent_events] == [
            EventType.CLOSE_STARTED,
            EventType.CLOSE_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_basic_level_skips_reconciliation(self, baas):
        baas.tables["lancamentos_contabeis"] = _entries()

        result = await ContinuousCloseService(baas).close("c1", "2026-03", validation_level="basic")

        assert "reconciliation" not in [v.name for v in result.validation_results]

    @pytest.mark.asyncio
    async def test_strict_level_blocks(self, baas):
        baas.tables["lancamentos_contabeis"] = _entries()
        publisher = EventPublisher()

        result = await ContinuousCloseService(baas, publisher).close(
            "c1", "2026-03", validation_level="strict"
        )

        assert result.success is False
        assert result.error == "Validations failed: completeness, reconciliation"
        assert result.generated_reports == {}
        assert "automation_logs" not in baas.inserted
        assert publisher.recent_events[-1].event_type == EventType.CLOSE_BLOCKED

    @pytest.mark.asyncio
    async def test_force_close_overrides_failures(self, baas):
        entries = _entries()
        entries[0]["lancamentos_itens"][1]["valor"] = "10.00"
        baas.tables["lancamentos_contabeis"] = entries

        result = await ContinuousCloseService(baas).close("c1", "2026-03", force_close=True)

        assert result.success is True
        assert result.validation_results[0].passed is False
        assert baas.inserted["automation_logs"][0]["metadata"]["forced"] is True

    @pytest.mark.asyncio
    async def test_already_closed_period(self, baas):
        baas.tables["automation_logs"] = [{"id": "log-1"}]

        result = await ContinuousCloseService(baas).close("c1", "2026-03")

        assert result.success is False
        assert "already closed" in (result.error or "")
        assert baas.calls_to("select", "lancamentos_contabeis") == []
        _, _, filters, _, _ = baas.calls_to("select", "automation_logs")[0]
        assert filters["metadata->>period"] == "eq.2026-03"

    @pytest.mark.asyncio
    async def test_pending_documents_counted(self, baas):
        baas.tables["lancamentos_contabeis"] = _entries()
        baas.tables["client_documents"] = [{"id": "d1"}, {"id": "d2"}]

        result = await ContinuousCloseService(baas).close("c1", "2026-03")

        completeness = next(v for v in result.validation_results if v.name == "completeness")
        assert completeness.details["pending_documents"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("client_id", "period", "level"),
        [("", "2026-03", "complete"), ("c1", "2026-03", "paranoid"), ("c1", "2026-3x", "basic")],
    )
    async def test_invalid_requests(self, baas, client_id, period, level):
        with pytest.raises(CloseError):
            await ContinuousCloseService(baas).close(client_id, period, validation_level=level)
