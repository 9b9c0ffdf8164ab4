"""ContaFlix - accounting automation worker for the ContaFlix BaaS."""

__version__ = "0.1.0"

from contaflix.anomalies import AnomalyService
from contaflix.classification import DocumentClassifier, EntryClassifier
from contaflix.clients import OpenAIClient
from contaflix.closing import CloseError, CloseResult, ContinuousCloseService
from contaflix.config import configure_logging, get_settings
from contaflix.obligations import ObligationTracker
from contaflix.payments import PaymentAlertProcessor, ScheduledPaymentProcessor
from contaflix.payroll import PayrollService, calculate_payroll
from contaflix.queue import QueueProcessor, QueueSummary
from contaflix.reconciliation import BankReconciler, PatternDetector
from contaflix.reports import ReportError, ReportGenerator
from contaflix.tools import BaaSClient, BaaSError

__all__ = [
    # Version
    "__version__",
    # BaaS
    "BaaSClient",
    "BaaSError",
    # LLM
    "OpenAIClient",
    # Services
    "AnomalyService",
    "BankReconciler",
    "CloseError",
    "CloseResult",
    "ContinuousCloseService",
    "DocumentClassifier",
    "EntryClassifier",
    "ObligationTracker",
    "PatternDetector",
    "PaymentAlertProcessor",
    "PayrollService",
    "QueueProcessor",
    "QueueSummary",
    "ReportError",
    "ReportGenerator",
    "ScheduledPaymentProcessor",
    "calculate_payroll",
    # Config
    "get_settings",
    "configure_logging",
]
