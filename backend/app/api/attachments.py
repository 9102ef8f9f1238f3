from fastapi import APIRouter, Depends, File, Header, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import PayloadTooLarge
from app.core.security import get_current_identity, require_identity
from app.schemas.audit import ReconciliationResult
from app.schemas.change_request import AttachmentRead
from app.services import attachment_service
from app.storage.blob_store import BaseBlobStore, get_blob_store

router = APIRouter(tags=["attachments"])


@router.post(
    "/requests/{request_id}/attachments",
    response_model=AttachmentRead,
    status_code=status.HTTP_201_CREATED,
)
async def upload_attachment(
    request_id: str,
    uploaded_file: UploadFile = File(...),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
    blob_store: BaseBlobStore = Depends(get_blob_store),
):
    limit = settings.max_attachment_bytes
    if uploaded_file.size is not None and uploaded_file.size > limit:
        raise PayloadTooLarge(uploaded_file.size, limit)
    # One byte past the limit is enough to reject without buffering the whole upload.
    content = await uploaded_file.read(limit + 1)
    return await attachment_service.attach(
        db,
        blob_store,
        request_id,
        uploaded_file.filename or "",
        content,
        identity,
        content_type=uploaded_file.content_type,
        idempotency_key=idempotency_key,
    )


@router.get("/requests/{request_id}/attachments", response_model=list[AttachmentRead])
async def list_attachments(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
):
    return await attachment_service.list_attachments(db, request_id)


@router.get("/attachments/{attachment_id}/url")
async def get_attachment_url(
    attachment_id: int,
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
    blob_store: BaseBlobStore = Depends(get_blob_store),
):
    attachment = await attachment_service.get_attachment(db, attachment_id)
    return {"id": attachment.id, "name": attachment.name, "url": await blob_store.get_url(attachment.storage_key)}


@router.delete("/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_attachment(
    attachment_id: int,
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
    blob_store: BaseBlobStore = Depends(get_blob_store),
):
    await attachment_service.remove(db, blob_store, attachment_id, identity)


@router.post("/attachments/reconcile", response_model=ReconciliationResult)
async def reconcile_attachments(
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
    blob_store: BaseBlobStore = Depends(get_blob_store),
):
    return await attachment_service.reconcile_orphans(db, blob_store)
