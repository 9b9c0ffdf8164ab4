"""Ledger records shared by classification and reconciliation."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any


class EntryKind(str, Enum):
    REVENUE = "receita"
    EXPENSE = "despesa"
    TRANSFER = "transferencia"


class TransactionKind(str, Enum):
    CREDIT = "credito"
    DEBIT = "debito"


@dataclass
class Entry:
    """An accounting entry (lançamento) as seen by the matching services."""

    id: str
    date: date
    amount: Decimal
    description: str
    kind: EntryKind
    category: str | None = None
    counterparty: str | None = None
    status: str | None = None
    confidence: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Entry":
        return cls(
            id=str(row["id"]),
            date=_as_date(row.get("data") or row.get("date")),
            amount=Decimal(str(row.get("valor", row.get("amount", 0)))),
            description=str(row.get("descricao") or row.get("description") or ""),
            kind=EntryKind(row.get("tipo") or row.get("kind") or EntryKind.EXPENSE.value),
            category=row.get("categoria") or row.get("category"),
            counterparty=row.get("contraparte") or row.get("counterparty"),
            status=row.get("status"),
        )


@dataclass
class BankTransaction:
    """A bank statement line."""

    id: str
    date: date
    amount: Decimal
    description: str
    kind: TransactionKind
    counterparty: str | None = None
    document: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "BankTransaction":
        return cls(
            id=str(row["id"]),
            date=_as_date(row.get("data") or row.get("date")),
            amount=Decimal(str(row.get("valor", row.get("amount", 0)))),
            description=str(row.get("descricao") or row.get("description") or ""),
            kind=TransactionKind(row.get("tipo") or row.get("kind") or TransactionKind.DEBIT.value),
            counterparty=row.get("contraparte") or row.get("counterparty"),
            document=row.get("documento") or row.get("document"),
        )


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Invalid date value: {value!r}")


def kinds_compatible(transaction: BankTransaction, entry: Entry) -> bool:
    """Credits pair with revenue, debits with expenses."""
    if transaction.kind == TransactionKind.CREDIT:
        return entry.kind == EntryKind.REVENUE
    return entry.kind == EntryKind.EXPENSE
