"""Main module for the garment capture CLI."""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

import httpx

from .core.adapters import EnvTokenProvider, LocalFileSource
from .core.exceptions import CapturePipelineError
from .core.factories import CapturePipelineFactory, LoggerFactory, S3BlobStoreFactory
from .core.models import PipelineConfig
from .core.observability import MetricsCollector
from .core.pipeline import CaptureOutcome

VERSION = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="garment-capture",
        description="Garment Capture - validate, process and store garment photos",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Process a photo and store the result (endpoint and token from the environment)
  CAPTURE_ACCESS_TOKEN=... garment-capture process --image shirt.jpg --owner-id user-1

  # Process only, without persisting to the storage bucket
  garment-capture process --image shirt.jpg --owner-id user-1 \\
                          --endpoint https://api.example.com/process --no-persist

  # Show version
  garment-capture version
        """,
    )

    subparsers: argparse._SubParsersAction = parser.add_subparsers(
        dest="command", help="Available commands"
    )

    process_parser: argparse.ArgumentParser = subparsers.add_parser(
        "process", help="Validate, process and store a garment photo"
    )
    process_parser.add_argument(
        "--image",
        dest="images",
        action="append",
        required=True,
        help="Image path; repeat to offer replacements when one is rejected",
    )
    process_parser.add_argument("--owner-id", required=True, help="Owner of the stored assets")
    process_parser.add_argument(
        "--endpoint", default=None, help="Processing endpoint URL (CAPTURE_ENDPOINT_URL)"
    )
    process_parser.add_argument(
        "--bucket", default=None, help="Storage bucket (CAPTURE_STORAGE_BUCKET)"
    )
    process_parser.add_argument(
        "--timeout", type=float, default=None, help="Request timeout in seconds"
    )
    process_parser.add_argument(
        "--no-persist", action="store_true", help="Skip storing the processed result"
    )
    process_parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )

    subparsers.add_parser("version", help="Show version information")
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """Environment configuration with command-line overrides applied."""
    overrides: Dict[str, Any] = {"max_reacquire_attempts": max(1, len(args.images))}
    if args.endpoint:
        overrides["endpoint_url"] = args.endpoint
    if args.bucket:
        overrides["storage_bucket"] = args.bucket
    if args.timeout is not None:
        overrides["request_timeout"] = args.timeout
    if args.debug:
        overrides["debug"] = True
    return PipelineConfig.from_env(**overrides)


def summarize(outcome: CaptureOutcome, metrics: MetricsCollector) -> Dict[str, Any]:
    """JSON-serializable summary of one capture run."""
    summary: Dict[str, Any] = {
        "status": outcome.validation.status.value,
        "phase": outcome.phase.value,
        "cancelled": outcome.cancelled,
    }
    if outcome.validation.message:
        summary["message"] = outcome.validation.message
    if outcome.run is not None:
        summary["idempotency_key"] = outcome.run.idempotency_key
        summary["attempts"] = outcome.run.attempts
    if outcome.result is not None:
        summary["result"] = outcome.result.model_dump(mode="json")
    if outcome.stored is not None:
        summary["stored"] = outcome.stored.model_dump(mode="json")
    remote = metrics.get_summary("remote_invoke")
    if remote:
        summary["remote_invoke"] = remote
    return summary


async def run_process(args: argparse.Namespace) -> Dict[str, Any]:
    config = config_from_args(args)
    logger = LoggerFactory.create_logger(level="DEBUG" if config.debug else None)
    metrics = MetricsCollector()

    async with httpx.AsyncClient(follow_redirects=False) as http_client:
        blob_store = None
        if not args.no_persist:
            blob_store = S3BlobStoreFactory.create_blob_store(config.storage_bucket)
        pipeline = CapturePipelineFactory.create_pipeline(
            source=LocalFileSource(args.images),
            http_client=http_client,
            token_provider=EnvTokenProvider(),
            blob_store=blob_store,
            logger=logger,
            config=config,
            metrics_collector=metrics,
        )
        outcome = await pipeline.run(
            args.owner_id,
            on_rejected=lambda rejected: print(rejected.message, file=sys.stderr),
        )
    return summarize(outcome, metrics)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the garment capture command-line interface.

    ``process`` runs one capture over the given image paths and prints a JSON
    summary; pipeline failures print their user-facing message and exit 1.
    """
    parser = build_parser()
    args: argparse.Namespace = parser.parse_args(argv)

    if args.command == "process":
        try:
            summary = asyncio.run(run_process(args))
        except CapturePipelineError as exc:
            print(f"Error: {exc.user_message}", file=sys.stderr)
            sys.exit(1)
        print(json.dumps(summary, indent=2))
        sys.exit(0 if summary["status"] in ("accepted", "cancelled") else 1)

    elif args.command == "version":
        print("Garment Capture CLI")
        print(f"Version {VERSION}")
        print("Garment photo capture, processing and storage pipeline")
        sys.exit(0)

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
