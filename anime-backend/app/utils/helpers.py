# backend/app/utils/helpers.py

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from bson import ObjectId
from pymongo.errors import ConnectionFailure

from app.services.errors import DataStoreTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# --- Time ---

def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    MongoDB stores datetimes as UTC without zone info and the driver hands them
    back naive, so everything written by the app uses the same representation.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)

# --- Text Processing ---

def normalize_text(text: Optional[str]) -> Optional[str]:
    """
    Normalizes a string by converting to lowercase and stripping whitespace.
    Returns None if the input is None.
    """
    if text is None:
        return None
    return text.lower().strip()

def normalize_tags(values: Optional[Iterable[Any]]) -> List[str]:
    """
    Lower-cases, strips and de-duplicates genre/mood labels, keeping first-seen order.
    Empty labels are dropped.
    """
    if not values:
        return []
    seen = set()
    result = []
    for value in values:
        tag = normalize_text(str(value)) if value is not None else None
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result

# --- Identifiers ---

def stringify_id(value: Any) -> Any:
    """Converts a BSON ObjectId to its hex string, leaving other values untouched."""
    if isinstance(value, ObjectId):
        return str(value)
    return value

# --- Data store calls ---

async def with_timeout(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """
    Awaits a single data-store round trip, bounded by `timeout_seconds`.

    Raises:
        DataStoreTimeoutError: If the call does not finish in time.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"Data store operation '{operation}' timed out after {timeout_seconds}s")
        raise DataStoreTimeoutError(f"Data store operation '{operation}' timed out.")

async def retry_read(
    factory: Callable[[], Awaitable[T]],
    timeout_seconds: float,
    operation: str,
    retries: int = 0,
    backoff_seconds: float = 0.2,
) -> T:
    """
    Runs an idempotent read with a timeout, retrying transient failures with
    exponential backoff. `factory` must build a fresh awaitable on every call.

    Only connection failures and timeouts are retried; other database errors
    propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return await with_timeout(factory(), timeout_seconds, operation)
        except (DataStoreTimeoutError, ConnectionFailure) as e:
            if attempt >= retries:
                raise
            delay = backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.warning(f"Retrying read '{operation}' in {delay:.2f}s (attempt {attempt}/{retries}): {e}")
            await asyncio.sleep(delay)
