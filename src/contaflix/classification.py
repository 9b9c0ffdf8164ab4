"""Entry categorisation and document type classification."""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from contaflix.ledger import Entry, EntryKind
from contaflix.tools.baas_api import BaaSClient, BaaSError, eq

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORIES = (
    "Vendas",
    "Prestação de Serviços",
    "Rendimentos",
    "Fornecedores",
    "Folha de Pagamento",
    "Impostos e Tributos",
    "Aluguel",
    "Utilidades",
    "Despesas Financeiras",
    "Outros",
)

_TAX = "Impostos e Tributos"
_PAYROLL = "Folha de Pagamento"
_FINANCIAL = "Despesas Financeiras"
_SERVICES = "Prestação de Serviços"

KEYWORD_RULES: dict[EntryKind, dict[str, str]] = {
    EntryKind.REVENUE: {
        "venda": "Vendas",
        "vendas": "Vendas",
        "pagamento": "Vendas",
        "cliente": "Vendas",
        "nf": "Vendas",
        "servico": _SERVICES,
        "serviços": _SERVICES,
        "consulta": _SERVICES,
        "consultoria": _SERVICES,
        "honorários": _SERVICES,
        "rendimento": "Rendimentos",
        "juros": "Rendimentos",
        "dividendo": "Rendimentos",
    },
    EntryKind.EXPENSE: {
        "fornecedor": "Fornecedores",
        "compra": "Fornecedores",
        "material": "Fornecedores",
        "salario": _PAYROLL,
        "salário": _PAYROLL,
        "folha": _PAYROLL,
        "funcionário": _PAYROLL,
        "funcionario": _PAYROLL,
        **{
            tax: _TAX
            for tax in (
                "imposto", "tributo", "darf", "das", "inss", "fgts", "irpj",
                "pis", "cofins", "csll", "iss", "icms", "ipi",
            )
        },
        "aluguel": "Aluguel",
        "locação": "Aluguel",
        "energia": "Utilidades",
        "água": "Utilidades",
        "agua": "Utilidades",
        "luz": "Utilidades",
        "telefone": "Utilidades",
        "internet": "Utilidades",
        "juros": _FINANCIAL,
        "taxa": _FINANCIAL,
        "tarifa": _FINANCIAL,
        "bancária": _FINANCIAL,
        "bancaria": _FINANCIAL,
        "banco": _FINANCIAL,
    },
}

STATUS_CLASSIFIED = "classificado"
STATUS_PENDING = "pendente"


@dataclass
class ClassifierConfig:
    confidence_threshold: float = 0.7
    use_history: bool = True
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    model_version: str = "1.0.0"


class EntryClassifier:
    """Keyword and history based entry classifier.

    A rule hit scores 0.85 once the model counts as trained (more than 50
    history examples or an explicit ``train()``), 0.65 before. A history hit
    scores 0.75 / 0.6. Anything else falls back to a default category at 0.3.
    """

    TRAINED_HISTORY_SIZE = 50
    AUTO_TRAIN_HISTORY_SIZE = 100

    def __init__(self, config: ClassifierConfig | None = None):
        self.config = config or ClassifierConfig()
        self._history: list[Entry] = []
        self._trained = False
        self._logger = logger.bind(component="entry_classifier")

    @property
    def is_trained(self) -> bool:
        return self._trained or len(self._history) > self.TRAINED_HISTORY_SIZE

    def train(self) -> bool:
        self._trained = True
        self._logger.info(
            "classifier_trained",
            examples=len(self._history),
            precision=self._estimated_precision(),
        )
        return True

    def add_training_history(self, entries: list[Entry]) -> int:
        """Keep the categorised entries; returns how many were added."""
        categorised = [e for e in entries if e.category]
        self._history.extend(categorised)
        self._logger.debug("training_history_added", added=len(categorised))
        if len(self._history) > self.AUTO_TRAIN_HISTORY_SIZE and not self._trained:
            self.train()
        return len(categorised)

    def _match_history(self, entry: Entry, terms: list[str]) -> str | None:
        for example in self._history:
            if example.kind != entry.kind:
                continue
            description = example.description.lower()
            if any(term in description for term in terms):
                return example.category
        return None

    def classify(self, entry: Entry) -> Entry:
        """Return a copy of the entry with category, confidence and status set."""
        trained = self.is_trained
        terms = [t for t in entry.description.lower().split(" ") if t]

        category: str | None = None
        confidence = 0.0

        rules = KEYWORD_RULES.get(entry.kind, {})
        for term in terms:
            if term in rules:
                category = rules[term]
                confidence = 0.85 if trained else 0.65
                break

        if category is None and self.config.use_history and self._history:
            category = self._match_history(entry, terms)
            if category:
                confidence = 0.75 if trained else 0.6

        if not category:
            category = "Vendas" if entry.kind == EntryKind.REVENUE else "Outros"
            confidence = 0.3

        status = (
            STATUS_CLASSIFIED
            if confidence > self.config.confidence_threshold
            else STATUS_PENDING
        )
        return replace(entry, category=category, confidence=confidence, status=status)

    def classify_many(self, entries: list[Entry]) -> list[Entry]:
        return [self.classify(entry) for entry in entries]

    def reclassify(self, entry: Entry, category: str, add_to_history: bool = True) -> Entry:
        """Manual classification; always full confidence."""
        updated = replace(entry, category=category, confidence=1.0, status=STATUS_CLASSIFIED)
        if add_to_history:
            self.add_training_history([updated])
        return updated

    def _estimated_precision(self) -> float:
        return min(95.0, 70 + len(self._history) / 50)

    def stats(self) -> dict[str, Any]:
        return {
            "trained": self._trained,
            "examples": len(self._history),
            "categories_seen": len({e.category for e in self._history}),
            "estimated_precision": self._estimated_precision(),
            "model_version": self.config.model_version,
            "categories": list(self.config.categories),
        }


# === Documents ===

DOCUMENT_TYPES: dict[str, tuple[str, float]] = {
    "nota-fiscal": ("invoice", 0.92),
    "recibo": ("receipt", 0.88),
    "contrato": ("contract", 0.95),
    "extrato": ("bank_statement", 0.90),
}
UNKNOWN_DOCUMENT = ("document", 0.60)


@dataclass
class DocumentClassification:
    document_id: str
    classification: str
    confidence: float
    status: str
    extracted_data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class DocumentClassifier:
    """Maps uploaded client documents to a document class."""

    def __init__(self, baas: BaaSClient):
        self._baas = baas
        self._logger = logger.bind(component="document_classifier")

    async def _set_status(self, document_id: str, status: str) -> None:
        await self._baas.update(
            "client_documents",
            {"status": status, "updated_at": datetime.now(UTC).isoformat()},
            {"id": eq(document_id)},
        )

    async def classify(self, document_id: str) -> DocumentClassification:
        try:
            document = await self._baas.select(
                "client_documents", {"id": eq(document_id)}, single=True
            )
            if not document:
                raise LookupError(f"Document not found: {document_id}")

            classification, confidence = DOCUMENT_TYPES.get(
                str(document.get("type") or ""), UNKNOWN_DOCUMENT
            )
            extracted = {"type": classification, "name": document.get("name")}

            await self._set_status(document_id, "processado")
        except (BaaSError, LookupError) as e:
            self._logger.warning(
                "document_classification_failed", document_id=document_id, error=str(e)
            )
            await self._set_status(document_id, "rejeitado")
            return DocumentClassification(
                document_id=document_id,
                classification="",
                confidence=0.0,
                status="failed",
                error=str(e),
            )

        self._logger.info(
            "document_classified",
            document_id=document_id,
            classification=classification,
            confidence=confidence,
        )
        return DocumentClassification(
            document_id=document_id,
            classification=classification,
            confidence=confidence,
            status="success",
            extracted_data=extracted,
        )

    async def classify_pending(self, client_id: str, status: str = "pendente") -> int:
        """Classify every document of a client in ``status``; returns successes."""
        documents = await self._baas.select(
            "client_documents", {"client_id": eq(client_id), "status": eq(status)}
        )
        if not documents:
            return 0
        results = await asyncio.gather(*(self.classify(str(d["id"])) for d in documents))
        return sum(1 for r in results if r.status == "success")
