import uuid
from enum import StrEnum

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin


class ChangeType(StrEnum):
    SOFTWARE = "Software"
    HARDWARE = "Hardware"
    NETWORK = "Network"
    SECURITY = "Security"
    OTHER = "Other"


class ImpactLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class RequestStatus(StrEnum):
    PENDING = "Pending"
    APPROVED = "Approved"
    DENIED = "Denied"
    IMPLEMENTED = "Implemented"
    COMPLETED = "Completed"


TERMINAL_STATUSES = frozenset({RequestStatus.DENIED, RequestStatus.COMPLETED})


def _uuid() -> str:
    return str(uuid.uuid4())


class ChangeRequest(TimestampMixin, Base):
    __tablename__ = "change_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    impact_level: Mapped[str] = mapped_column(String(16), nullable=False)
    expected_downtime: Mapped[str | None] = mapped_column(Text, nullable=True)
    rollback_plan: Mapped[str | None] = mapped_column(Text, nullable=True)
    approver: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), default=RequestStatus.PENDING, nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    attachments: Mapped[list["Attachment"]] = relationship(  # noqa: F821
        back_populates="request",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Attachment.id",
    )
