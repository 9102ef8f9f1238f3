"""Lifecycle engine: owns change request state transitions.

Transition table:
  - Pending     -> Approved     designated approver
  - Pending     -> Denied       designated approver
  - Approved    -> Implemented  designated approver or a delegated implementer
  - Implemented -> Completed    designated approver

Every mutation is a compare-and-swap on the request version. The engine never
sends notifications; callers decide what to do after a successful change.
"""

from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import (
    Conflict,
    InvalidState,
    InvalidTransition,
    NotAuthorized,
    ValidationError,
)
from app.core.timeouts import bounded
from app.models.attachment import BlobTombstone
from app.models.audit import AuditLog
from app.models.change_request import ChangeRequest, RequestStatus
from app.repositories.change_request_repository import ChangeRequestRepository
from app.schemas.change_request import ChangeRequestCreate, ChangeRequestUpdate
from app.utils.logging import get_logger

logger = get_logger(__name__)

TRANSITIONS: frozenset[tuple[RequestStatus, RequestStatus]] = frozenset(
    {
        (RequestStatus.PENDING, RequestStatus.APPROVED),
        (RequestStatus.PENDING, RequestStatus.DENIED),
        (RequestStatus.APPROVED, RequestStatus.IMPLEMENTED),
        (RequestStatus.IMPLEMENTED, RequestStatus.COMPLETED),
    }
)

EDITABLE_FIELDS = frozenset(
    {"title", "description", "change_type", "impact_level", "expected_downtime", "rollback_plan"}
)
DELETABLE_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.DENIED})


def _same_identity(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.strip().casefold() == b.strip().casefold()


def _validation_fields(exc: PydanticValidationError) -> list[str]:
    fields: list[str] = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        name = str(loc[0]) if loc else "__root__"
        if name not in fields:
            fields.append(name)
    return fields


def is_allowed(current: str, target: str) -> bool:
    try:
        return (RequestStatus(current), RequestStatus(target)) in TRANSITIONS
    except ValueError:
        return False


def allowed_targets(current: str) -> list[RequestStatus]:
    return [target for source, target in sorted(TRANSITIONS) if source == current]


class LifecycleEngine:
    def _require_identity(self, acting_identity: str | None) -> str:
        if acting_identity is None or not acting_identity.strip():
            raise NotAuthorized("An authenticated identity is required")
        return acting_identity.strip()

    def _authorize_transition(self, change_request: ChangeRequest, target: str, actor: str) -> None:
        if _same_identity(actor, change_request.approver):
            return
        if (
            change_request.status == RequestStatus.APPROVED
            and target == RequestStatus.IMPLEMENTED
            and any(_same_identity(actor, delegate) for delegate in settings.delegated_implementers)
        ):
            return
        raise NotAuthorized(f"Only the designated approver may move this request to {target}")

    async def create(
        self,
        db: AsyncSession,
        fields: dict[str, Any],
        acting_identity: str | None,
        timeout: float | None = None,
    ) -> ChangeRequest:
        """Validate and persist a new request in Pending."""
        actor = self._require_identity(acting_identity)
        try:
            data = ChangeRequestCreate.model_validate(fields)
        except PydanticValidationError as exc:
            raise ValidationError(_validation_fields(exc)) from exc

        repo = ChangeRequestRepository(db, timeout)
        record = data.model_dump(mode="json")
        change_request = await repo.create({**record, "status": RequestStatus.PENDING.value, "created_by": actor})
        await self._log_audit(db, change_request.id, actor, "created", {
            "approver": change_request.approver,
            "change_type": change_request.change_type,
            "impact_level": change_request.impact_level,
        }, timeout)
        return change_request

    async def get(self, db: AsyncSession, request_id: str, timeout: float | None = None) -> ChangeRequest:
        return await ChangeRequestRepository(db, timeout).get(request_id)

    async def list_requests(
        self,
        db: AsyncSession,
        status: str | None = None,
        approver: str | None = None,
        created_by: str | None = None,
        participant: str | None = None,
        search: str | None = None,
        newest_first: bool = True,
        timeout: float | None = None,
    ) -> list[ChangeRequest]:
        return await ChangeRequestRepository(db, timeout).list(
            status=status,
            approver=approver,
            created_by=created_by,
            participant=participant,
            search=search,
            newest_first=newest_first,
        )

    async def transition(
        self,
        db: AsyncSession,
        request_id: str,
        target_status: str,
        acting_identity: str | None,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> ChangeRequest:
        repo = ChangeRequestRepository(db, timeout)
        change_request = await repo.get(request_id)
        actor = self._require_identity(acting_identity)

        try:
            target = RequestStatus(target_status)
        except ValueError as exc:
            raise ValidationError(["status"], f"Unknown status: {target_status}") from exc

        self._authorize_transition(change_request, target, actor)

        if expected_version is not None and expected_version != change_request.version:
            raise Conflict(request_id, expected_version, change_request.version)

        current = change_request.status
        if not is_allowed(current, target):
            logger.info("Rejected transition %s -> %s on %s", current, target, request_id)
            raise InvalidTransition(current, target.value)

        updated = await repo.update(request_id, {"status": target.value}, change_request.version)
        await self._log_audit(db, request_id, actor, "status_changed", {
            "from": current,
            "to": target.value,
            "version": updated.version,
        }, timeout)
        logger.info("Change request %s moved %s -> %s by %s", request_id, current, target.value, actor)
        return updated

    async def edit(
        self,
        db: AsyncSession,
        request_id: str,
        fields: dict[str, Any],
        acting_identity: str | None,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> ChangeRequest:
        """Edit content fields; submitter only, and only while Pending."""
        repo = ChangeRequestRepository(db, timeout)
        change_request = await repo.get(request_id)
        actor = self._require_identity(acting_identity)

        if not _same_identity(actor, change_request.created_by):
            raise NotAuthorized("Only the submitter may edit this request")
        immutable = sorted(set(fields) - EDITABLE_FIELDS - {"expected_version"})
        if immutable:
            raise ValidationError(immutable, f"Field(s) cannot be edited: {', '.join(immutable)}")
        if change_request.status != RequestStatus.PENDING:
            raise InvalidState(f"Request is {change_request.status}; only Pending requests can be edited")
        if expected_version is not None and expected_version != change_request.version:
            raise Conflict(request_id, expected_version, change_request.version)

        try:
            data = ChangeRequestUpdate.model_validate(fields)
        except PydanticValidationError as exc:
            raise ValidationError(_validation_fields(exc)) from exc

        patch = data.model_dump(mode="json", exclude_unset=True, exclude={"expected_version"})
        for required in ("title", "description", "change_type", "impact_level"):
            if required in patch and patch[required] is None:
                raise ValidationError([required])
        if not patch:
            raise ValidationError([], "No editable fields supplied")

        updated = await repo.update(request_id, patch, change_request.version)
        await self._log_audit(db, request_id, actor, "edited", {
            "fields": sorted(patch),
            "version": updated.version,
        }, timeout)
        return updated

    async def delete(
        self,
        db: AsyncSession,
        request_id: str,
        acting_identity: str | None,
        timeout: float | None = None,
    ) -> list[str]:
        """Delete a request and its attachment metadata.

        Returns the storage keys that were tombstoned; the caller purges them.
        """
        repo = ChangeRequestRepository(db, timeout)
        change_request = await repo.get(request_id)
        actor = self._require_identity(acting_identity)

        if not _same_identity(actor, change_request.created_by):
            raise NotAuthorized("Only the submitter may delete this request")
        if change_request.status not in DELETABLE_STATUSES:
            raise InvalidState(f"Request is {change_request.status}; only Pending or Denied requests can be deleted")

        keys = [attachment.storage_key for attachment in change_request.attachments]
        for key in keys:
            db.add(BlobTombstone(storage_key=key, request_id=request_id, reason="request deleted"))

        await self._log_audit(db, request_id, actor, "deleted", {
            "request_id": request_id,
            "title": change_request.title,
            "attachments": len(keys),
        }, timeout)
        await repo.delete(request_id)
        return keys

    async def _log_audit(
        self,
        db: AsyncSession,
        request_id: str | None,
        actor: str | None,
        action: str,
        details: dict[str, Any] | None = None,
        timeout: float | None = None,
    ):
        log = AuditLog(
            request_id=request_id,
            actor=actor,
            action=action,
            details=details,
        )
        db.add(log)
        await bounded(db.flush(), "repository.audit", timeout)


lifecycle_engine = LifecycleEngine()
