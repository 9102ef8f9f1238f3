from fastapi import APIRouter

from app.api.attachments import router as attachments_router
from app.api.auth import router as auth_router
from app.api.requests import router as requests_router

router = APIRouter(prefix="/v1")


@router.get("/status", tags=["system"])
async def status() -> dict[str, str]:
    return {"api": "up"}


router.include_router(auth_router)
router.include_router(requests_router)
router.include_router(attachments_router)

api_router = APIRouter()
api_router.include_router(router)
