"""Attachment metadata + blob pairing.

Upload writes the blob first and metadata second, deleting the blob again if
the metadata write fails. Removal commits the metadata delete together with
a tombstone, then deletes the blob; a tombstone that outlives the request is
retried by ``reconcile_orphans``.
"""

import uuid
from pathlib import PurePath
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AttachmentCleanupPending,
    CollaboratorTimeout,
    InvalidState,
    NotAuthorized,
    NotFound,
    PayloadTooLarge,
    ValidationError,
)
from app.core.timeouts import bounded, retry_read
from app.models.attachment import Attachment, BlobTombstone
from app.models.audit import AuditLog
from app.models.change_request import TERMINAL_STATUSES, ChangeRequest
from app.storage.blob_store import BaseBlobStore, BlobStoreError
from app.utils.logging import get_logger

logger = get_logger(__name__)


def _storage_key(request_id: str, filename: str) -> str:
    suffix = PurePath(filename).suffix.lower()[:16]
    return f"{request_id}/{uuid.uuid4().hex}{suffix}"


def _same_identity(a: str | None, b: str | None) -> bool:
    return bool(a and b) and a.strip().casefold() == b.strip().casefold()


async def _get_request(
    db: AsyncSession, request_id: str, timeout: float | None, for_update: bool = False
) -> ChangeRequest:
    """Load the request fresh from the database, never from the identity map.

    With ``for_update`` the row stays locked until commit, so a concurrent
    transition cannot slip in between the state check and the insert.
    """
    stmt = (
        select(ChangeRequest)
        .where(ChangeRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        result = await bounded(db.execute(stmt.with_for_update()), "repository.get", timeout)
    else:
        result = await retry_read(lambda: db.execute(stmt), "repository.get", timeout)
    change_request = result.scalar_one_or_none()
    if change_request is None:
        raise NotFound(f"Change request {request_id} not found")
    return change_request


async def attach(
    db: AsyncSession,
    blob_store: BaseBlobStore,
    request_id: str,
    filename: str,
    content: bytes,
    uploaded_by: str | None,
    content_type: str | None = None,
    idempotency_key: str | None = None,
    timeout: float | None = None,
) -> Attachment:
    if not uploaded_by:
        raise NotAuthorized("An authenticated identity is required")
    if not filename or not filename.strip():
        raise ValidationError(["name"])

    change_request = await _get_request(db, request_id, timeout, for_update=True)
    if change_request.status in TERMINAL_STATUSES:
        raise InvalidState(f"Attachments are frozen once a request is {change_request.status}")

    size = len(content)
    if size > settings.max_attachment_bytes:
        raise PayloadTooLarge(size, settings.max_attachment_bytes)

    if idempotency_key:
        replay = select(Attachment).where(
            Attachment.request_id == request_id,
            Attachment.idempotency_key == idempotency_key,
        )
        result = await bounded(db.execute(replay), "repository.find_upload", timeout)
        existing = result.scalar_one_or_none()
        if existing is not None:
            logger.info("Replayed upload %s for request %s", idempotency_key, request_id)
            return existing

    name = PurePath(filename.strip()).name
    key = _storage_key(request_id, name)
    await bounded(blob_store.put_blob(key, content, content_type), "blob_store.put", timeout)

    attachment = Attachment(
        request_id=request_id,
        name=name,
        content_type=content_type,
        size_bytes=size,
        storage_key=key,
        uploaded_by=uploaded_by,
        idempotency_key=idempotency_key,
    )
    db.add(attachment)
    db.add(AuditLog(request_id=request_id, actor=uploaded_by, action="attachment_added", details={
        "name": name,
        "size_bytes": size,
    }))
    try:
        await bounded(db.flush(), "repository.attach", timeout)
    except Exception:
        logger.warning("Metadata write failed for %s; deleting blob %s", request_id, key)
        try:
            await blob_store.delete_blob(key)
        except BlobStoreError:
            logger.exception("Could not delete blob %s after failed upload", key)
        raise

    logger.info("Attached %s (%d bytes) to request %s", name, size, request_id)
    return attachment


async def list_attachments(db: AsyncSession, request_id: str, timeout: float | None = None) -> list[Attachment]:
    await _get_request(db, request_id, timeout)

    async def _run() -> list[Attachment]:
        result = await db.execute(
            select(Attachment).where(Attachment.request_id == request_id).order_by(Attachment.id)
        )
        return list(result.scalars().all())

    return await retry_read(_run, "repository.list_attachments", timeout)


async def get_attachment(db: AsyncSession, attachment_id: int, timeout: float | None = None) -> Attachment:
    attachment = await retry_read(lambda: db.get(Attachment, attachment_id), "repository.get_attachment", timeout)
    if attachment is None:
        raise NotFound(f"Attachment {attachment_id} not found")
    return attachment


async def remove(
    db: AsyncSession,
    blob_store: BaseBlobStore,
    attachment_id: int,
    acting_identity: str | None,
    timeout: float | None = None,
) -> None:
    if not acting_identity:
        raise NotAuthorized("An authenticated identity is required")

    attachment = await get_attachment(db, attachment_id, timeout)
    change_request = await _get_request(db, attachment.request_id, timeout)
    if not (
        _same_identity(acting_identity, attachment.uploaded_by)
        or _same_identity(acting_identity, change_request.created_by)
    ):
        raise NotAuthorized("Only the uploader or the request submitter may remove this attachment")

    key = attachment.storage_key
    request_id = attachment.request_id
    tombstone = BlobTombstone(storage_key=key, request_id=request_id, reason="attachment removed")
    db.add(tombstone)
    db.add(AuditLog(request_id=request_id, actor=acting_identity, action="attachment_removed", details={
        "attachment_id": attachment_id,
        "name": attachment.name,
    }))
    await db.delete(attachment)
    await bounded(db.commit(), "repository.remove_attachment", timeout)

    try:
        await bounded(blob_store.delete_blob(key), "blob_store.delete", timeout)
    except (BlobStoreError, CollaboratorTimeout) as exc:
        tombstone.attempts += 1
        await bounded(db.commit(), "repository.tombstone", timeout)
        logger.warning("Blob %s left behind after removing attachment %s: %s", key, attachment_id, exc)
        raise AttachmentCleanupPending(key, str(exc)) from exc

    await db.delete(tombstone)
    await bounded(db.commit(), "repository.tombstone", timeout)
    logger.info("Removed attachment %s (%s) from request %s", attachment_id, key, request_id)


async def reconcile_orphans(
    db: AsyncSession,
    blob_store: BaseBlobStore,
    keys: list[str] | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Retry blob deletion for tombstoned keys; returns purged and pending keys."""
    stmt = select(BlobTombstone).order_by(BlobTombstone.created_at)
    if keys is not None:
        if not keys:
            return {"purged": [], "pending": []}
        stmt = stmt.where(BlobTombstone.storage_key.in_(keys))
    result = await retry_read(lambda: db.execute(stmt), "repository.tombstones", timeout)
    tombstones = list(result.scalars().all())

    purged: list[str] = []
    pending: list[str] = []
    for tombstone in tombstones:
        try:
            await bounded(blob_store.delete_blob(tombstone.storage_key), "blob_store.delete", timeout)
        except (BlobStoreError, CollaboratorTimeout) as exc:
            tombstone.attempts += 1
            tombstone.reason = str(exc)[:255]
            pending.append(tombstone.storage_key)
            continue
        await db.delete(tombstone)
        purged.append(tombstone.storage_key)

    await bounded(db.flush(), "repository.tombstones", timeout)
    if purged or pending:
        logger.info("Blob reconciliation: %d purged, %d pending", len(purged), len(pending))
    return {"purged": purged, "pending": pending}
