import asyncio
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.errors import CollaboratorTimeout
from app.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], operation: str, timeout: float | None = None) -> T:
    """Await a collaborator call, raising CollaboratorTimeout once the deadline passes."""
    limit = settings.collaborator_timeout_seconds if timeout is None else timeout
    try:
        return await asyncio.wait_for(awaitable, timeout=limit)
    except asyncio.TimeoutError as exc:
        logger.warning("%s timed out after %ss", operation, limit)
        raise CollaboratorTimeout(operation, limit) from exc


async def retry_read(
    call: Callable[[], Awaitable[T]],
    operation: str,
    timeout: float | None = None,
    attempts: int | None = None,
) -> T:
    """Run an idempotent read with bounded retries on transient database errors.

    Only reads go through here; writes use version checks instead of retries.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.read_retry_attempts)
    for attempt in range(1, max_attempts + 1):
        try:
            return await bounded(call(), operation, timeout)
        except OperationalError:
            if attempt == max_attempts:
                raise
            logger.info("%s failed transiently (attempt %d/%d), retrying", operation, attempt, max_attempts)
            await asyncio.sleep(0.05 * attempt)
    raise RuntimeError("unreachable")
