"""Settings for the sync core, read from the environment and ``.env`` files."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Connection and tuning settings.

    Attributes:
        project_id: Firestore project id
        base_url: Firestore REST endpoint
        database: Firestore database id
        api_key: Optional web API key sent with every request
        feed_collection: Collection holding class wall posts
        attendance_collection: Collection holding attendance documents
        correlation_tolerance: Seconds a confirmed post's server timestamp may
            differ from the local estimate and still match its placeholder
        mutation_timeout: Seconds before an unconfirmed push is given up
        max_retries: Retries of a push that failed with a transient error
        retry_backoff: First retry delay in seconds, doubled on every retry
        retry_backoff_max: Upper bound of a single retry delay
        attendance_conflict_retries: Re-reads of an attendance record after
            another instructor changed it between our read and write
        request_timeout: HTTP timeout for a single REST call
    """

    project_id: str = ""
    base_url: str = "https://firestore.googleapis.com/v1"
    database: str = "(default)"
    api_key: Optional[str] = None
    feed_collection: str = "feedItems"
    attendance_collection: str = "attendance"
    correlation_tolerance: float = 5.0
    mutation_timeout: float = 15.0
    max_retries: int = 3
    retry_backoff: float = 0.5
    retry_backoff_max: float = 4.0
    attendance_conflict_retries: int = 3
    request_timeout: float = 30.0


def _load_env() -> None:
    """Load .env from the working directory or the project directory."""
    here = Path(__file__).resolve().parent
    for candidate in [Path.cwd() / ".env", here.parent / ".env", here.parent.parent / ".env"]:
        if candidate.exists():
            load_dotenv(candidate)
            return
    load_dotenv()


def _float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def load_settings(*, env_file: bool = True) -> Settings:
    """Build Settings from ``CLASSWALL_*`` environment variables.

    Args:
        env_file: Whether to load a ``.env`` file first

    Returns:
        Settings with defaults for everything not set
    """
    if env_file:
        _load_env()

    defaults = Settings()
    return Settings(
        project_id=os.getenv("CLASSWALL_PROJECT_ID", defaults.project_id),
        base_url=os.getenv("CLASSWALL_BASE_URL", defaults.base_url).rstrip("/"),
        database=os.getenv("CLASSWALL_DATABASE", defaults.database),
        api_key=os.getenv("CLASSWALL_API_KEY") or None,
        feed_collection=os.getenv("CLASSWALL_FEED_COLLECTION", defaults.feed_collection),
        attendance_collection=os.getenv("CLASSWALL_ATTENDANCE_COLLECTION", defaults.attendance_collection),
        correlation_tolerance=_float("CLASSWALL_CORRELATION_TOLERANCE", defaults.correlation_tolerance),
        mutation_timeout=_float("CLASSWALL_MUTATION_TIMEOUT", defaults.mutation_timeout),
        max_retries=_int("CLASSWALL_MAX_RETRIES", defaults.max_retries),
        retry_backoff=_float("CLASSWALL_RETRY_BACKOFF", defaults.retry_backoff),
        retry_backoff_max=_float("CLASSWALL_RETRY_BACKOFF_MAX", defaults.retry_backoff_max),
        attendance_conflict_retries=_int(
            "CLASSWALL_ATTENDANCE_CONFLICT_RETRIES", defaults.attendance_conflict_retries
        ),
        request_timeout=_float("CLASSWALL_REQUEST_TIMEOUT", defaults.request_timeout),
    )
