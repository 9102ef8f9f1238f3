from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.models.change_request import ChangeType, ImpactLevel, RequestStatus


def _require_text(value: str) -> str:
    if value is None or not str(value).strip():
        raise ValueError("must not be empty")
    return str(value).strip()


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ChangeRequestCreate(BaseModel):
    title: str = Field(..., max_length=255)
    description: str
    change_type: ChangeType
    impact_level: ImpactLevel
    expected_downtime: str | None = None
    rollback_plan: str | None = None
    approver: EmailStr

    @field_validator("title", "description", mode="before")
    @classmethod
    def not_blank(cls, value):
        return _require_text(value)

    @field_validator("expected_downtime", "rollback_plan", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _optional_text(value)

    @field_validator("approver")
    @classmethod
    def normalize_approver(cls, value: str) -> str:
        # Stored the way registration stores emails, so listing by identity matches.
        return value.strip().lower()


class ChangeRequestUpdate(BaseModel):
    title: str | None = Field(None, max_length=255)
    description: str | None = None
    change_type: ChangeType | None = None
    impact_level: ImpactLevel | None = None
    expected_downtime: str | None = None
    rollback_plan: str | None = None
    expected_version: int | None = None

    @field_validator("title", "description", mode="before")
    @classmethod
    def not_blank(cls, value):
        if value is None:
            return value
        return _require_text(value)

    @field_validator("expected_downtime", "rollback_plan", mode="before")
    @classmethod
    def blank_is_none(cls, value):
        return _optional_text(value)


class TransitionRequest(BaseModel):
    status: RequestStatus
    expected_version: int | None = None


class AttachmentRead(BaseModel):
    id: int
    request_id: str
    name: str
    content_type: str | None
    size_bytes: int
    storage_key: str
    uploaded_by: str
    uploaded_at: datetime

    model_config = {"from_attributes": True}


class ChangeRequestRead(BaseModel):
    id: str
    title: str
    description: str
    change_type: str
    impact_level: str
    expected_downtime: str | None
    rollback_plan: str | None
    approver: str
    status: str
    created_by: str
    version: int
    created_at: datetime
    updated_at: datetime
    attachments: list[AttachmentRead] = []

    model_config = {"from_attributes": True}


class ChangeRequestListItem(BaseModel):
    id: str
    title: str
    change_type: str
    impact_level: str
    approver: str
    status: str
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class LifecycleResponse(BaseModel):
    request: ChangeRequestRead
    notification: str | None = None
