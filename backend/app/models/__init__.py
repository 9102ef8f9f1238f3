from app.models.base import Base, TimestampMixin
from app.models.user import User
from app.models.change_request import ChangeRequest
from app.models.attachment import Attachment, BlobTombstone
from app.models.audit import AuditLog

__all__ = [
    "Base", "TimestampMixin", "User",
    "ChangeRequest", "Attachment", "BlobTombstone",
    "AuditLog",
]
