"""Durable store of change requests.

The lifecycle engine reaches the database only through this module.  Every
mutation is a compare-and-swap on ``version`` so two writers that loaded the
same snapshot can never both win.
"""

from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.errors import Conflict, NotFound
from app.core.timeouts import bounded, retry_read
from app.models.attachment import Attachment
from app.models.base import utcnow
from app.models.change_request import ChangeRequest
from app.utils.logging import get_logger

logger = get_logger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "approver", "created_by", "created_at", "version"})


def _identity_key(identity: str) -> str:
    return identity.strip().lower()


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class ChangeRequestRepository:
    def __init__(self, db: AsyncSession, timeout: float | None = None) -> None:
        self.db = db
        self.timeout = timeout

    async def _load(self, request_id: str) -> ChangeRequest | None:
        result = await self.db.execute(
            select(ChangeRequest)
            .options(selectinload(ChangeRequest.attachments))
            .where(ChangeRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find(self, request_id: str) -> ChangeRequest | None:
        return await retry_read(lambda: self._load(request_id), "repository.get", self.timeout)

    async def get(self, request_id: str) -> ChangeRequest:
        change_request = await self.find(request_id)
        if change_request is None:
            raise NotFound(f"Change request {request_id} not found")
        return change_request

    async def create(self, record: dict[str, Any]) -> ChangeRequest:
        now = utcnow()
        change_request = ChangeRequest(**record, created_at=now, updated_at=now, version=1, attachments=[])
        self.db.add(change_request)
        await bounded(self.db.flush(), "repository.create", self.timeout)
        logger.info("Created change request %s", change_request.id)
        return change_request

    async def update(self, request_id: str, patch: dict[str, Any], expected_version: int) -> ChangeRequest:
        """Apply ``patch`` only if the stored version still equals ``expected_version``."""
        illegal = sorted(IMMUTABLE_FIELDS.intersection(patch))
        if illegal:
            raise ValueError(f"Immutable field(s) cannot be patched: {', '.join(illegal)}")

        values = {**patch, "updated_at": utcnow(), "version": ChangeRequest.version + 1}
        stmt = (
            update(ChangeRequest)
            .where(ChangeRequest.id == request_id, ChangeRequest.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await bounded(self.db.execute(stmt), "repository.update", self.timeout)
        if result.rowcount == 0:
            current = await self._load(request_id)
            if current is None:
                raise NotFound(f"Change request {request_id} not found")
            logger.warning(
                "Version conflict on %s: expected %d, found %d", request_id, expected_version, current.version
            )
            raise Conflict(request_id, expected_version, current.version)

        refreshed = await self._load(request_id)
        assert refreshed is not None
        return refreshed

    async def list(
        self,
        status: str | None = None,
        approver: str | None = None,
        created_by: str | None = None,
        participant: str | None = None,
        search: str | None = None,
        newest_first: bool = True,
    ) -> list[ChangeRequest]:
        order = ChangeRequest.created_at.desc() if newest_first else ChangeRequest.created_at.asc()
        stmt = select(ChangeRequest).options(selectinload(ChangeRequest.attachments)).order_by(order)
        if status:
            stmt = stmt.where(ChangeRequest.status == status)
        if approver:
            stmt = stmt.where(func.lower(ChangeRequest.approver) == _identity_key(approver))
        if created_by:
            stmt = stmt.where(func.lower(ChangeRequest.created_by) == _identity_key(created_by))
        if participant:
            key = _identity_key(participant)
            stmt = stmt.where(
                or_(func.lower(ChangeRequest.created_by) == key, func.lower(ChangeRequest.approver) == key)
            )
        if search and search.strip():
            # Case-insensitive substring match on title or description.
            pattern = f"%{_escape_like(search.strip())}%"
            stmt = stmt.where(
                or_(
                    ChangeRequest.title.ilike(pattern, escape="\\"),
                    ChangeRequest.description.ilike(pattern, escape="\\"),
                )
            )

        async def _run() -> list[ChangeRequest]:
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

        return await retry_read(_run, "repository.list", self.timeout)

    async def delete(self, request_id: str) -> None:
        await bounded(
            self.db.execute(delete(Attachment).where(Attachment.request_id == request_id)),
            "repository.delete",
            self.timeout,
        )
        result = await bounded(
            self.db.execute(delete(ChangeRequest).where(ChangeRequest.id == request_id)),
            "repository.delete",
            self.timeout,
        )
        if result.rowcount == 0:
            raise NotFound(f"Change request {request_id} not found")
        logger.info("Deleted change request %s", request_id)
