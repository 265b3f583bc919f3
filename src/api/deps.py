import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.adapters.clock import SystemClock
from src.adapters.sqlite_db import (
    SQLiteAttributionLookup,
    SQLiteAuditSink,
    SQLiteEventLogRepo,
    SQLiteMembershipRepo,
    SQLitePostAnalyticsRepo,
)
from src.api.auth_utils import caller_id_from_token
from src.rules.loader import load_rules
from src.rules.models import Rules


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.data_dir = Path(os.environ.get("ANALYTICS_DATA_DIR", "./data"))
        self.db_path = str(self.data_dir / "analytics.db")
        self.rules_path = Path(
            os.environ.get("ANALYTICS_RULES_PATH", str(self.base_dir / "rules.yaml"))
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
@lru_cache
def get_rules(settings: Settings = Depends(get_settings)) -> Rules:
    return load_rules(settings.rules_path)


# --- Repos ---
def get_event_log(settings: Settings = Depends(get_settings)) -> SQLiteEventLogRepo:
    return SQLiteEventLogRepo(settings.db_path)


def get_aggregate_store(settings: Settings = Depends(get_settings)) -> SQLitePostAnalyticsRepo:
    return SQLitePostAnalyticsRepo(settings.db_path)


def get_attribution_lookup(
    settings: Settings = Depends(get_settings),
) -> SQLiteAttributionLookup:
    return SQLiteAttributionLookup(settings.db_path)


def get_membership(settings: Settings = Depends(get_settings)) -> SQLiteMembershipRepo:
    return SQLiteMembershipRepo(settings.db_path)


def get_audit_sink(settings: Settings = Depends(get_settings)) -> SQLiteAuditSink:
    return SQLiteAuditSink(settings.db_path)


# Time adapter for deterministic time operations
_clock_instance: SystemClock | None = None


def get_clock() -> SystemClock:
    """Get clock singleton."""
    global _clock_instance
    if _clock_instance is None:
        _clock_instance = SystemClock()
    return _clock_instance


# --- Auth ---
bearer_scheme = HTTPBearer(auto_error=False)


def get_caller_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> UUID:
    """
    Caller identity from the identity provider's bearer token.

    The token is trusted as pre-validated by the provider; only the
    signature and the `sub` claim are checked here.
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    caller_id = caller_id_from_token(credentials.credentials)
    if caller_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return caller_id
