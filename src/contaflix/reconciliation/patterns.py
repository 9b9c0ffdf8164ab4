"""Recurring-pattern detection that feeds reconciliation suggestions."""

import re
import statistics
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

import structlog

from contaflix.ledger import BankTransaction, Entry
from contaflix.reconciliation.matching import ReconciliationMatch, relative_difference

logger = structlog.get_logger(__name__)

_NON_WORD = re.compile(r"[^\w\s]")


class PatternType(str, Enum):
    RECURRING = "recurring"
    SEASONAL = "seasonal"
    PERIODIC = "periodic"
    SINGULAR = "singular"


class MappingMode(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SUGGESTED = "suggested"


@dataclass
class PatternConfig:
    min_occurrences: int = 3
    analysis_window_days: int = 90
    min_apply_confidence: float = 0.8


@dataclass
class DetectedPattern:
    id: str
    pattern_type: PatternType
    description: str
    confidence: float
    occurrences: int
    last_detected: datetime
    description_regex: str | None = None
    conditions: dict[str, Any] = field(default_factory=dict)
    examples: list[BankTransaction] = field(default_factory=list)


@dataclass
class TransactionMapping:
    """Learned link between a statement description and an entry description."""

    transaction_regex: str
    entry_regex: str | None
    confidence: float
    last_used: datetime
    successes: int = 0
    failures: int = 0
    mode: MappingMode = MappingMode.SUGGESTED

    def matches(self, description: str) -> bool:
        return re.search(self.transaction_regex, description, re.IGNORECASE) is not None

    def refresh_confidence(self) -> None:
        total = self.successes + self.failures
        if total == 0:
            return
        success_rate = self.successes / total
        experience = min(1.0, total / 20)
        self.confidence = 0.5 + success_rate * 0.5 * experience
        self.last_used = datetime.now(UTC)


@dataclass
class PatternAnalysis:
    patterns: list[DetectedPattern]
    mappings: list[TransactionMapping]
    improvement_potential: float


def _keywords(text: str) -> str:
    words = _NON_WORD.sub("", text.lower()).split(" ")
    return "_".join(sorted(w for w in words if len(w) > 4))


def extract_text_pattern(descriptions: list[str]) -> str | None:
    """Alternation of the words (longer than 3 chars) shared by every description."""
    if len(descriptions) < 2:
        return None

    common: list[str] | None = None
    for description in descriptions:
        words = [w for w in _NON_WORD.sub(" ", description.lower()).split(" ") if len(w) > 3]
        if common is None:
            common = list(dict.fromkeys(words))
        else:
            present = set(words)
            common = [w for w in common if w in present]

    if not common:
        return None
    return "(" + "|".join(re.escape(w) for w in common) + ")"


def classify_intervals(transactions: list[BankTransaction]) -> PatternType:
    dates = sorted(t.date for t in transactions)
    intervals = [(b - a).days for a, b in zip(dates, dates[1:], strict=False)]
    if not intervals:
        return PatternType.SINGULAR

    mean = statistics.fmean(intervals)
    std = statistics.pstdev(intervals)

    if 25 <= mean <= 35 and std < 5:
        return PatternType.RECURRING
    if 85 <= mean <= 95 and std < 10:
        return PatternType.RECURRING
    if 350 <= mean <= 380:
        return PatternType.SEASONAL
    if std < mean * 0.3:
        return PatternType.PERIODIC
    return PatternType.SINGULAR


class PatternDetector:
    """Keeps detected patterns and learned mappings across analyses."""

    def __init__(self, config: PatternConfig | None = None):
        self.config = config or PatternConfig()
        self._patterns: list[DetectedPattern] = []
        self._mappings: list[TransactionMapping] = []
        self._logger = logger.bind(component="pattern_detector")

    @property
    def patterns(self) -> list[DetectedPattern]:
        return list(self._patterns)

    @property
    def mappings(self) -> list[TransactionMapping]:
        return list(self._mappings)

    def _group_transactions(
        self, transactions: Iterable[BankTransaction]
    ) -> dict[str, list[BankTransaction]]:
        groups: dict[str, list[BankTransaction]] = defaultdict(list)
        for transaction in transactions:
            if transaction.counterparty:
                key = f"counterparty:{transaction.counterparty}"
            else:
                key = f"desc:{_keywords(transaction.description)}"
            groups[key].append(transaction)
        return groups

    def _temporal_patterns(self, transactions: list[BankTransaction]) -> list[DetectedPattern]:
        by_day: dict[int, list[BankTransaction]] = defaultdict(list)
        for transaction in transactions:
            by_day[transaction.date.day].append(transaction)

        found: list[DetectedPattern] = []
        for day, group in by_day.items():
            if len(group) < self.config.min_occurrences:
                continue
            frequency = Counter(t.counterparty for t in group if t.counterparty)
            for counterparty, count in frequency.items():
                if count < self.config.min_occurrences:
                    continue
                example = next(t for t in group if t.counterparty == counterparty)
                found.append(
                    DetectedPattern(
                        id=f"pattern_day_{uuid4().hex[:10]}",
                        pattern_type=PatternType.RECURRING,
                        description=f"Transactions from {counterparty} on day {day} of each month",
                        confidence=0.7 + min(0.2, count / 10),
                        occurrences=count,
                        last_detected=datetime.now(UTC),
                        conditions={"day_of_month": day, "counterparty": counterparty},
                        examples=[example],
                    )
                )
        return found

    def _improvement_potential(self, total_items: int) -> float:
        if total_items == 0:
            return 0.0
        with_patterns = sum(p.occurrences for p in self._patterns)
        mapped = sum(
            m.successes
            for m in self._mappings
            if m.confidence >= self.config.min_apply_confidence
        )
        return min(0.95, (with_patterns + mapped) / total_items)

    def analyze(
        self,
        transactions: list[BankTransaction],
        entries: list[Entry],
        reconciled: list[ReconciliationMatch] | None = None,
    ) -> PatternAnalysis:
        new_patterns: list[DetectedPattern] = []
        new_mappings: list[TransactionMapping] = []
        now = datetime.now(UTC)

        for group in self._group_transactions(transactions).values():
            if len(group) < self.config.min_occurrences:
                continue
            regex = extract_text_pattern([t.description for t in group])
            if not regex:
                continue

            existing = next(
                (p for p in self._patterns if p.description_regex == regex), None
            )
            if existing:
                existing.occurrences += len(group)
                existing.last_detected = now
                existing.examples = (existing.examples + [group[0]])[:5]
                existing.confidence = min(existing.confidence + 0.05, 1.0)
            else:
                new_patterns.append(
                    DetectedPattern(
                        id=f"pattern_{uuid4().hex[:10]}",
                        pattern_type=classify_intervals(group),
                        description=f"Pattern in transactions: {group[0].description[:30]}...",
                        confidence=0.6 + min(0.3, len(group) / 20),
                        occurrences=len(group),
                        last_detected=now,
                        description_regex=regex,
                        examples=[group[0]],
                    )
                )

            if reconciled:
                related = [
                    m for m in reconciled
                    if re.search(regex, m.transaction.description, re.IGNORECASE)
                ]
                if len(related) >= 2:
                    entry_regex = extract_text_pattern([m.entry.description for m in related])
                    if entry_regex:
                        new_mappings.append(
                            TransactionMapping(
                                transaction_regex=regex,
                                entry_regex=entry_regex,
                                confidence=0.7 + min(0.2, len(related) / 10),
                                last_used=now,
                                successes=len(related),
                            )
                        )

        new_patterns.extend(self._temporal_patterns(transactions))
        self._patterns.extend(new_patterns)
        self._mappings.extend(new_mappings)

        if new_patterns or new_mappings:
            self._logger.info(
                "patterns_detected",
                patterns=len(new_patterns),
                mappings=len(new_mappings),
            )

        return PatternAnalysis(
            patterns=self.patterns,
            mappings=self.mappings,
            improvement_potential=self._improvement_potential(
                len(transactions) + len(entries)
            ),
        )

    @staticmethod
    def _best_entry(transaction: BankTransaction, entries: list[Entry]) -> Entry | None:
        best_score = -1.0
        best: Entry | None = None
        for entry in entries:
            score = 0.0
            diff = relative_difference(transaction.amount, entry.amount)
            if diff <= 0.01:
                score += 0.5 * (1 - diff / 0.01)
            days = abs((transaction.date - entry.date).days)
            if days <= 5:
                score += 0.5 * (1 - days / 5)
            if score > best_score:
                best_score = score
                best = entry
        return best if best_score >= 0.6 else None

    def apply_mappings(
        self, transactions: list[BankTransaction], entries: list[Entry]
    ) -> list[ReconciliationMatch]:
        """Suggest pairs for unreconciled items using confident mappings."""
        suggestions: list[ReconciliationMatch] = []
        usable = [
            m for m in self._mappings if m.confidence >= self.config.min_apply_confidence
        ]

        for transaction in transactions:
            for mapping in usable:
                if not mapping.matches(transaction.description) or not mapping.entry_regex:
                    continue
                candidates = [
                    e for e in entries
                    if re.search(mapping.entry_regex, e.description, re.IGNORECASE)
                ]
                best = self._best_entry(transaction, candidates)
                if best is None:
                    continue
                suggestions.append(
                    ReconciliationMatch(
                        transaction=transaction,
                        entry=best,
                        score=mapping.confidence,
                        automatic=mapping.mode == MappingMode.AUTOMATIC,
                    )
                )
                mapping.successes += 1
                mapping.refresh_confidence()
                break

        self._logger.debug("mappings_applied", suggestions=len(suggestions))
        return suggestions

    def record_results(
        self,
        successes: list[ReconciliationMatch],
        undone: list[ReconciliationMatch],
    ) -> int:
        """Update mapping statistics; returns the number of mappings learned."""
        for match in successes:
            for mapping in self._mappings:
                if mapping.matches(match.transaction.description):
                    mapping.successes += 1
                    mapping.refresh_confidence()

        for match in undone:
            for mapping in self._mappings:
                if mapping.matches(match.transaction.description):
                    mapping.failures += 1
                    mapping.refresh_confidence()

        unmapped = [
            m for m in successes
            if not any(mp.matches(m.transaction.description) for mp in self._mappings)
        ]
        if len(unmapped) < self.config.min_occurrences:
            return 0

        groups: dict[str, list[ReconciliationMatch]] = defaultdict(list)
        for match in unmapped:
            groups[f"trans:{_keywords(match.transaction.description)}"].append(match)

        learned = 0
        for group in groups.values():
            if len(group) < self.config.min_occurrences:
                continue
            tx_regex = extract_text_pattern([m.transaction.description for m in group])
            entry_regex = extract_text_pattern([m.entry.description for m in group])
            if tx_regex and entry_regex:
                self._mappings.append(
                    TransactionMapping(
                        transaction_regex=tx_regex,
                        entry_regex=entry_regex,
                        confidence=0.7 + min(0.2, len(group) / 10),
                        last_used=datetime.now(UTC),
                        successes=len(group),
                    )
                )
                learned += 1
                self._logger.info(
                    "mapping_learned", transaction_regex=tx_regex, entry_regex=entry_regex
                )
        return learned

    def reset(self) -> None:
        self._patterns.clear()
        self._mappings.clear()
        self._logger.info("patterns_reset")

    def stats(self) -> dict[str, Any]:
        by_type = {t.value: 0 for t in PatternType}
        for pattern in self._patterns:
            by_type[pattern.pattern_type.value] += 1
        return {
            "total_patterns": len(self._patterns),
            "total_mappings": len(self._mappings),
            "patterns_by_type": by_type,
            "active_mappings": sum(
                1 for m in self._mappings if m.confidence >= self.config.min_apply_confidence
            ),
            "automation_potential": self._improvement_potential(200),
        }
