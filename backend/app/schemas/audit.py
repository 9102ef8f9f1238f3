from pydantic import BaseModel
from datetime import datetime


class AuditLogRead(BaseModel):
    id: int
    request_id: str | None
    actor: str | None
    action: str
    details: dict | None
    timestamp: datetime

    model_config = {"from_attributes": True}


class ReconciliationResult(BaseModel):
    purged: list[str]
    pending: list[str]
