import os
from typing import cast

from src.core.quotes.models import SignatureReplacementPolicy
from src.core.quotes.repository import QuoteRepository
from src.infrastructure.quotes import InMemoryQuoteRepository, PostgresQuoteRepository

DEFAULT_EXPIRATION_THRESHOLD_DAYS = 30
DEFAULT_EXPIRATION_MAX_QUOTES_PER_RUN = 1000
DEFAULT_SIGNATURE_DUPLICATE_WINDOW_SECONDS = 10


def env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int, *, minimum: int = 1) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError as exc:
        raise RuntimeError(f"QUOTE_CONFIG_INVALID_INTEGER:{name}") from exc
    if parsed < minimum:
        raise RuntimeError(f"QUOTE_CONFIG_BELOW_MINIMUM:{name}")
    return parsed


def quote_store_backend_name() -> str:
    backend = os.getenv("QUOTE_STORE_BACKEND", "IN_MEMORY").strip().upper()
    return "POSTGRES" if backend == "POSTGRES" else "IN_MEMORY"


def quote_postgres_dsn() -> str:
    return os.getenv("QUOTE_POSTGRES_DSN", "").strip()


def lifecycle_enabled() -> bool:
    return env_flag("QUOTE_LIFECYCLE_ENABLED", True)


def support_apis_enabled() -> bool:
    return env_flag("QUOTE_SUPPORT_APIS_ENABLED", True)


def expiration_sweep_api_enabled() -> bool:
    return env_flag("QUOTE_EXPIRATION_SWEEP_API_ENABLED", False)


def expiration_threshold_days() -> int:
    return env_int("QUOTE_EXPIRATION_DAYS", DEFAULT_EXPIRATION_THRESHOLD_DAYS)


def expiration_max_quotes_per_run() -> int:
    return env_int("QUOTE_EXPIRATION_MAX_PER_RUN", DEFAULT_EXPIRATION_MAX_QUOTES_PER_RUN)


def signature_duplicate_window_seconds() -> int:
    return env_int(
        "QUOTE_SIGNATURE_DUPLICATE_WINDOW_SECONDS",
        DEFAULT_SIGNATURE_DUPLICATE_WINDOW_SECONDS,
        minimum=0,
    )


def signature_replacement_policy() -> SignatureReplacementPolicy:
    policy = os.getenv("QUOTE_SIGNATURE_REPLACEMENT_POLICY", "SUPERSEDE").strip().upper()
    if policy not in {"SUPERSEDE", "REJECT"}:
        raise RuntimeError("QUOTE_CONFIG_INVALID_REPLACEMENT_POLICY")
    return cast(SignatureReplacementPolicy, policy)


def _postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    import psycopg

    return (ConnectionError, OSError, TimeoutError, TypeError, ValueError, psycopg.Error)


def build_repository() -> QuoteRepository:
    if quote_store_backend_name() == "POSTGRES":
        dsn = quote_postgres_dsn()
        if not dsn:
            raise RuntimeError("QUOTE_POSTGRES_DSN_REQUIRED")
        try:
            return cast(QuoteRepository, PostgresQuoteRepository(dsn=dsn))
        except RuntimeError:
            raise
        except _postgres_connection_exception_types() as exc:
            raise RuntimeError("QUOTE_POSTGRES_CONNECTION_FAILED") from exc
    return cast(QuoteRepository, InMemoryQuoteRepository())
