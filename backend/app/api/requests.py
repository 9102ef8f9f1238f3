import asyncio
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response, status
from kombu.exceptions import OperationalError as BrokerError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import CollaboratorTimeout, NotificationFailed, ValidationError
from app.core.security import get_current_identity, require_identity
from app.core.timeouts import bounded
from app.models.audit import AuditLog
from app.models.change_request import ChangeRequest, RequestStatus
from app.schemas.audit import AuditLogRead
from app.schemas.change_request import (
    ChangeRequestListItem,
    ChangeRequestRead,
    LifecycleResponse,
    TransitionRequest,
)
from app.services import attachment_service, export_service
from app.services.notification_service import NotificationDispatcher, get_dispatcher
from app.storage.blob_store import BaseBlobStore, get_blob_store
from app.utils.logging import get_logger
from app.workflow.engine import lifecycle_engine

logger = get_logger(__name__)
router = APIRouter(prefix="/requests", tags=["requests"])

# States in which the approver has the next move.
NOTIFY_ON = frozenset({RequestStatus.APPROVED, RequestStatus.IMPLEMENTED})


def _enqueue_notification(request_id: str) -> None:
    from app.worker import task_notify_approver

    task_notify_approver.delay(request_id)


async def _notify_approver(db: AsyncSession, dispatcher: NotificationDispatcher, change_request: ChangeRequest) -> str:
    """Commit the lifecycle change, then notify; a failed send never undoes the change."""
    await db.commit()
    if settings.notifications_via_worker:
        # Publishing blocks on the broker connection, so keep it off the event loop.
        try:
            await bounded(
                asyncio.to_thread(_enqueue_notification, change_request.id),
                "notification.enqueue",
            )
        except (BrokerError, CollaboratorTimeout) as exc:
            logger.warning("Approver notification for %s not queued: %s", change_request.id, exc)
            return "failed"
        return "queued"
    try:
        await dispatcher.notify_approver(change_request)
    except (NotificationFailed, CollaboratorTimeout) as exc:
        logger.warning("Approver notification for %s not delivered: %s", change_request.id, exc)
        return "failed"
    return "sent"


@router.post("", response_model=LifecycleResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    body: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    change_request = await lifecycle_engine.create(db, body, identity)
    notification = await _notify_approver(db, dispatcher, change_request)
    return LifecycleResponse(request=ChangeRequestRead.model_validate(change_request), notification=notification)


@router.get("", response_model=list[ChangeRequestListItem])
async def list_requests(
    status_filter: RequestStatus | None = Query(None, alias="status"),
    approver: str | None = Query(None),
    created_by: str | None = Query(None),
    mine: bool = Query(False),
    q: str | None = Query(None, max_length=200),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    identity: str = Depends(require_identity),
):
    return await lifecycle_engine.list_requests(
        db,
        status=status_filter.value if status_filter else None,
        approver=approver,
        created_by=created_by,
        participant=identity if mine else None,
        search=q,
        newest_first=order == "desc",
    )


@router.get("/{request_id}", response_model=ChangeRequestRead)
async def get_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
):
    return await lifecycle_engine.get(db, request_id)


@router.patch("/{request_id}", response_model=ChangeRequestRead)
async def edit_request(
    request_id: str,
    body: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
):
    fields = dict(body)
    expected_version = fields.pop("expected_version", None)
    if expected_version is not None and not isinstance(expected_version, int):
        raise ValidationError(["expected_version"])
    return await lifecycle_engine.edit(db, request_id, fields, identity, expected_version=expected_version)


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_request(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
    blob_store: BaseBlobStore = Depends(get_blob_store),
):
    keys = await lifecycle_engine.delete(db, request_id, identity)
    await db.commit()
    result = await attachment_service.reconcile_orphans(db, blob_store, keys=keys)
    if result["pending"]:
        logger.warning("Request %s deleted; %d blob(s) left for reconciliation", request_id, len(result["pending"]))


@router.post("/{request_id}/transition", response_model=LifecycleResponse)
async def transition_request(
    request_id: str,
    body: TransitionRequest,
    db: AsyncSession = Depends(get_db),
    identity: str | None = Depends(get_current_identity),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    change_request = await lifecycle_engine.transition(
        db, request_id, body.status.value, identity, expected_version=body.expected_version
    )
    notification = None
    if change_request.status in NOTIFY_ON:
        notification = await _notify_approver(db, dispatcher, change_request)
    return LifecycleResponse(request=ChangeRequestRead.model_validate(change_request), notification=notification)


@router.get("/{request_id}/export")
async def export_request(
    request_id: str,
    export_format: str = Query("csv", alias="format"),
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
):
    if export_format not in export_service.EXPORT_FORMATS:
        raise ValidationError(["format"], f"Unsupported export format: {export_format}")
    change_request = await lifecycle_engine.get(db, request_id)
    document = export_service.render(change_request)
    media_type, serialize = export_service.EXPORT_FORMATS[export_format]
    return Response(
        content=serialize(document),
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{document.filename_stem}.{export_format}"'},
    )


@router.get("/{request_id}/audit-log", response_model=list[AuditLogRead])
async def get_request_audit_log(
    request_id: str,
    db: AsyncSession = Depends(get_db),
    _=Depends(require_identity),
):
    await lifecycle_engine.get(db, request_id)
    result = await db.execute(
        select(AuditLog).where(AuditLog.request_id == request_id).order_by(AuditLog.id)
    )
    return list(result.scalars().all())
