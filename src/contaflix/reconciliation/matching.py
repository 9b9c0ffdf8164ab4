"""Bank reconciliation: pairing statement lines with accounting entries."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

import structlog

from contaflix.ledger import BankTransaction, Entry, kinds_compatible

logger = structlog.get_logger(__name__)


class MatchStrategy(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class StrategyThresholds:
    accept: float
    reject: float


STRATEGY_THRESHOLDS: dict[MatchStrategy, StrategyThresholds] = {
    MatchStrategy.CONSERVATIVE: StrategyThresholds(accept=0.9, reject=0.7),
    MatchStrategy.MODERATE: StrategyThresholds(accept=0.8, reject=0.5),
    MatchStrategy.AGGRESSIVE: StrategyThresholds(accept=0.7, reject=0.3),
}


@dataclass
class ReconciliationConfig:
    auto_threshold: float = 0.85
    date_tolerance_days: int = 3
    value_tolerance: float = 0.01
    use_counterparty: bool = True
    strategy: MatchStrategy = MatchStrategy.MODERATE


@dataclass
class ReconciliationMatch:
    transaction: BankTransaction
    entry: Entry
    score: float
    automatic: bool
    reconciled_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ReconciliationResult:
    matches: list[ReconciliationMatch]
    unmatched_transactions: list[BankTransaction]
    unmatched_entries: list[Entry]

    @property
    def total_matched(self) -> int:
        return len(self.matches)


def relative_difference(a: Decimal, b: Decimal) -> float:
    a, b = abs(a), abs(b)
    largest = max(a, b)
    if largest == 0:
        return 0.0
    return float(abs(a - b) / largest)


def _description_score(first: str, second: str) -> float:
    a = first.lower()
    b = second.lower()
    if a == b:
        return 0.2
    if a in b or b in a:
        return 0.15
    words_a = [w for w in a.split(" ") if len(w) > 3]
    words_b = [w for w in b.split(" ") if len(w) > 3]
    common = [w for w in words_a if w in words_b]
    if common:
        return min(0.1, len(common) * 0.03)
    return 0.0


class BankReconciler:
    """Two-pass greedy reconciler.

    The first pass pairs kind-compatible items whose score reaches the
    strategy's accept threshold. The second pass (moderate and aggressive
    only) pairs items within twice the value tolerance whose score reaches
    the reject threshold; those pairs always need review.
    """

    def __init__(self, config: ReconciliationConfig | None = None):
        self.config = config or ReconciliationConfig()
        self._logger = logger.bind(component="bank_reconciler")

    def score(self, transaction: BankTransaction, entry: Entry) -> float:
        cfg = self.config
        score = 0.0

        if abs(transaction.amount) == abs(entry.amount):
            score += 0.5
        else:
            diff = relative_difference(transaction.amount, entry.amount)
            if diff <= cfg.value_tolerance:
                score += 0.5 * (1 - diff / cfg.value_tolerance)

        days = abs((transaction.date - entry.date).days)
        if days == 0:
            score += 0.3
        elif days <= cfg.date_tolerance_days:
            score += 0.3 * (1 - days / cfg.date_tolerance_days)

        score += _description_score(transaction.description, entry.description)

        if (
            cfg.use_counterparty
            and transaction.counterparty
            and entry.counterparty
            and transaction.counterparty == entry.counterparty
        ):
            score += 0.1

        return min(1.0, score)

    def _best_match(
        self,
        transaction: BankTransaction,
        entries: list[Entry],
        first_pass: bool,
    ) -> tuple[int, float] | None:
        best: tuple[int, float] | None = None
        for idx, entry in enumerate(entries):
            if first_pass:
                if not kinds_compatible(transaction, entry):
                    continue
            elif (
                relative_difference(transaction.amount, entry.amount)
                > self.config.value_tolerance * 2
            ):
                continue
            score = self.score(transaction, entry)
            if score > (best[1] if best else 0.0):
                best = (idx, score)
        return best

    def reconcile(
        self, transactions: list[BankTransaction], entries: list[Entry]
    ) -> ReconciliationResult:
        thresholds = STRATEGY_THRESHOLDS[self.config.strategy]
        remaining_tx = list(transactions)
        remaining_entries = list(entries)
        matches: list[ReconciliationMatch] = []

        for i in range(len(remaining_tx) - 1, -1, -1):
            transaction = remaining_tx[i]
            best = self._best_match(transaction, remaining_entries, first_pass=True)
            if best and best[1] >= thresholds.accept:
                idx, score = best
                matches.append(
                    ReconciliationMatch(
                        transaction=transaction,
                        entry=remaining_entries[idx],
                        score=score,
                        automatic=score >= self.config.auto_threshold,
                    )
                )
                del remaining_tx[i]
                del remaining_entries[idx]

        if self.config.strategy != MatchStrategy.CONSERVATIVE:
            for i in range(len(remaining_tx) - 1, -1, -1):
                transaction = remaining_tx[i]
                best = self._best_match(transaction, remaining_entries, first_pass=False)
                if best and best[1] >= thresholds.reject:
                    idx, score = best
                    matches.append(
                        ReconciliationMatch(
                            transaction=transaction,
                            entry=remaining_entries[idx],
                            score=score,
                            automatic=False,
                        )
                    )
                    del remaining_tx[i]
                    del remaining_entries[idx]

        self._logger.info(
            "reconciliation_completed",
            matched=len(matches),
            unmatched_transactions=len(remaining_tx),
            unmatched_entries=len(remaining_entries),
            strategy=self.config.strategy.value,
        )
        return ReconciliationResult(
            matches=matches,
            unmatched_transactions=remaining_tx,
            unmatched_entries=remaining_entries,
        )

    def reconcile_manually(
        self, transaction: BankTransaction, entry: Entry
    ) -> ReconciliationMatch:
        """Pair two items by hand; the score is kept for reference."""
        match = ReconciliationMatch(
            transaction=transaction,
            entry=entry,
            score=self.score(transaction, entry),
            automatic=False,
        )
        self._logger.info(
            "manual_reconciliation",
            transaction_id=transaction.id,
            entry_id=entry.id,
            score=round(match.score, 2),
        )
        return match

    def undo(self, match: ReconciliationMatch) -> tuple[BankTransaction, Entry]:
        self._logger.info(
            "reconciliation_undone",
            transaction_id=match.transaction.id,
            entry_id=match.entry.id,
        )
        return match.transaction, match.entry
