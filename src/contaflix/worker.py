"""Command-line entry point for the ContaFlix automation worker.

Usage:
    python -m contaflix.worker queue
    python -m contaflix.worker --publish queue --loop --interval=60
    python -m contaflix.worker close <client_id> 2026-09 --level=strict
    python -m contaflix.worker payments --date=2026-10-15
    python -m contaflix.worker alerts
    python -m contaflix.worker anomalies <client_id> --type=financial
    python -m contaflix.worker report <id> tax --format=csv --start=2026-01-01 --end=2026-09-30
    python -m contaflix.worker obligations <client_id>
"""

import argparse
import asyncio
import json
import sys
from datetime import date
from typing import Any

import structlog

from contaflix.anomalies import AnomalyService
from contaflix.clients import OpenAIClient
from contaflix.closing import VALIDATION_LEVELS, ContinuousCloseService
from contaflix.config import bind_command_context, configure_logging, get_settings
from contaflix.events import EventPublisher
from contaflix.obligations import ObligationTracker
from contaflix.payments import PaymentAlertProcessor, ScheduledPaymentProcessor
from contaflix.queue import QueueProcessor
from contaflix.reports import ReportFormat, ReportGenerator, ReportType
from contaflix.tools.baas_api import BaaSClient, BaaSError

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="contaflix-worker",
        description="ContaFlix accounting automation worker",
    )
    parser.add_argument(
        "--publish",
        action="store_true",
        help="Serve realtime events over WebSocket while the command runs",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    queue = commands.add_parser("queue", help="Process the processing queue")
    queue.add_argument("--batch-size", type=int, default=None)
    queue.add_argument("--loop", action="store_true", help="Keep polling the queue")
    queue.add_argument("--interval", type=float, default=60.0, help="Seconds between batches")

    close = commands.add_parser("close", help="Close an accounting period")
    close.add_argument("client_id")
    close.add_argument("period", help="Period as YYYY-MM")
    close.add_argument("--force", action="store_true", help="Close despite failed validations")
    close.add_argument("--level", choices=VALIDATION_LEVELS, default="complete")

    payments = commands.add_parser("payments", help="Run the scheduled payment batch")
    payments.add_argument("--date", type=date.fromisoformat, default=None)

    commands.add_parser("alerts", help="Send pending payment alerts")

    anomalies = commands.add_parser("anomalies", help="Detect anomalies for a client")
    anomalies.add_argument("client_id")
    anomalies.add_argument("--type", choices=["financial", "documents"], default="financial")
    anomalies.add_argument("--period", default=None)
    anomalies.add_argument("--no-llm", action="store_true", help="Statistical checks only")

    report = commands.add_parser("report", help="Generate a report")
    report.add_argument("client_id")
    report.add_argument("report_type", choices=[t.value for t in ReportType])
    report.add_argument("--format", choices=[f.value for f in ReportFormat], default="json")
    report.add_argument("--start", type=date.fromisoformat, required=True)
    report.add_argument("--end", type=date.fromisoformat, required=True)

    obligations = commands.add_parser("obligations", help="Refresh fiscal obligations")
    obligations.add_argument("client_id")
    obligations.add_argument("--date", type=date.fromisoformat, default=None)

    return parser


def _llm_client(disabled: bool) -> OpenAIClient | None:
    if disabled or get_settings().openai_api_key is None:
        return None
    return OpenAIClient()


async def run_command(
    args: argparse.Namespace,
    baas: BaaSClient,
    publisher: EventPublisher | None = None,
) -> Any:
    """Run one worker command and return its JSON-serializable result."""
    if args.command == "queue":
        processor = QueueProcessor(baas, publisher=publisher, batch_size=args.batch_size)
        if not args.loop:
            return (await processor.process_batch()).to_dict()
        while True:
            try:
                await processor.process_batch()
            except BaaSError as e:
                logger.error("queue_batch_aborted", error=str(e), status_code=e.status_code)
            await asyncio.sleep(args.interval)

    if args.command == "close":
        result = await ContinuousCloseService(baas, publisher=publisher).close(
            args.client_id, args.period, force_close=args.force, validation_level=args.level
        )
        return result.to_dict()

    if args.command == "payments":
        return await ScheduledPaymentProcessor(baas, publisher=publisher).run(args.date)

    if args.command == "alerts":
        return (await PaymentAlertProcessor(baas).run()).to_dict()

    if args.command == "anomalies":
        service = AnomalyService(baas, llm=_llm_client(args.no_llm))
        return await service.run(args.client_id, args.type, args.period)

    if args.command == "report":
        generator = ReportGenerator(baas, publisher=publisher)
        return await generator.generate(
            args.client_id, args.report_type, args.format, args.start, args.end
        )

    if args.command == "obligations":
        status = await ObligationTracker(baas).refresh(args.client_id, args.date)
        return status.to_dict()

    raise ValueError(f"Unknown command: {args.command}")


async def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)

    bind_command_context(args.command)
    logger.info("worker_command_started")

    publisher = EventPublisher() if args.publish else None
    try:
        if publisher is not None:
            await publisher.start()
        async with BaaSClient() as baas:
            result = await run_command(args, baas, publisher)
    except KeyboardInterrupt:
        logger.info("worker_interrupted")
        return 130
    except Exception as e:
        logger.exception("worker_error", error=str(e))
        return 1
    finally:
        if publisher is not None:
            await publisher.stop()

    print(json.dumps(result, default=str, ensure_ascii=False, indent=2))
    return 0


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
