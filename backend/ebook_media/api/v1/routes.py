from fastapi import APIRouter

from ebook_media.api.v1 import media_admin

api_router = APIRouter()

api_router.include_router(media_admin.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
