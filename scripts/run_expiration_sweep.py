import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

logger = logging.getLogger("quote.expiration_sweep")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description=(
            "Expire quotes that have been inactive longer than the configured threshold. "
            "Intended for cron or on-demand runs against the configured quote store."
        )
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List quotes that would expire without changing them.",
    )
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Reference time (ISO 8601) for the inactivity cutoff; naive values are UTC.",
    )
    parser.add_argument(
        "--threshold-days",
        type=int,
        default=None,
        help="Override QUOTE_EXPIRATION_DAYS for this run.",
    )
    parser.add_argument(
        "--max-quotes",
        type=int,
        default=None,
        help="Override QUOTE_EXPIRATION_MAX_PER_RUN for this run.",
    )
    args = parser.parse_args(argv)

    from src.api.observability import configure_json_logging
    from src.api.routers import quotes_config
    from src.core.quotes import ExpirationSweeper, QuoteLifecycleService

    configure_json_logging()
    repository = quotes_config.build_repository()
    service = QuoteLifecycleService(
        repository=repository,
        duplicate_capture_window_seconds=quotes_config.signature_duplicate_window_seconds(),
        replacement_policy=quotes_config.signature_replacement_policy(),
    )
    sweeper = ExpirationSweeper(
        service=service,
        repository=repository,
        expiration_threshold_days=args.threshold_days or quotes_config.expiration_threshold_days(),
        max_quotes_per_run=args.max_quotes or quotes_config.expiration_max_quotes_per_run(),
    )
    result = sweeper.run(now=args.now, dry_run=args.dry_run)
    print(result.model_dump_json(indent=2))
    if result.failures:
        logger.warning("Expiration sweep finished with %d failures", len(result.failures))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
