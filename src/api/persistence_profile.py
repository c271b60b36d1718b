from __future__ import annotations

import os

from src.api.routers.quotes_config import (
    quote_postgres_dsn,
    quote_store_backend_name,
    signature_replacement_policy,
)

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    # Invalid policy values fail startup in every profile.
    signature_replacement_policy()
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if quote_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_QUOTE_POSTGRES")
    if not quote_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_QUOTE_POSTGRES_DSN")
