import asyncio

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery("changeflow", broker=settings.redis_url, backend=settings.redis_url)

celery_app.conf.beat_schedule = {
    "reconcile-orphaned-blobs": {
        "task": "app.tasks.reconcile_orphaned_blobs",
        "schedule": crontab(minute="*/15"),  # Every 15 minutes
    },
}


def _run_async(coro):
    """Helper to run async code inside sync Celery tasks."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@celery_app.task(name="app.tasks.health")
def health_task() -> str:
    return "worker-ok"


@celery_app.task(
    bind=True,
    name="app.tasks.notify_approver",
    max_retries=settings.notification_max_retries,
    default_retry_delay=30,
)
def task_notify_approver(self, request_id: str) -> dict:
    """Send the approver notification for a request's current state, retrying on failure."""

    async def _do():
        from app.core.database import AsyncSessionLocal
        from app.core.errors import CollaboratorTimeout, NotFound, NotificationFailed
        from app.services.notification_service import get_dispatcher
        from app.workflow.engine import lifecycle_engine

        async with AsyncSessionLocal() as db:
            try:
                change_request = await lifecycle_engine.get(db, request_id)
            except NotFound:
                return {"request_id": request_id, "status": "skipped", "reason": "not found"}
            try:
                await get_dispatcher().notify_approver(change_request)
            except (NotificationFailed, CollaboratorTimeout) as exc:
                return {"request_id": request_id, "status": "failed", "error": str(exc)}
            return {"request_id": request_id, "status": "sent", "state": change_request.status}

    result = _run_async(_do())
    if result["status"] == "failed":
        raise self.retry(exc=RuntimeError(result["error"]))
    return result


@celery_app.task(name="app.tasks.reconcile_orphaned_blobs")
def task_reconcile_orphaned_blobs() -> dict:
    """Retry blob deletion for attachments whose metadata is already gone."""

    async def _do():
        from app.core.database import AsyncSessionLocal
        from app.services import attachment_service
        from app.storage.blob_store import get_blob_store

        async with AsyncSessionLocal() as db:
            result = await attachment_service.reconcile_orphans(db, get_blob_store())
            await db.commit()
            return {"purged": len(result["purged"]), "pending": len(result["pending"])}

    return _run_async(_do())
