from fastapi import APIRouter

from app.api.v1.generation import router as generation_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(generation_router)


@api_v1_router.get("/health")
async def health():
    return {"status": "ok"}
