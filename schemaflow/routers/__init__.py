from fastapi import APIRouter

from schemaflow.routers import migrations

api_router = APIRouter()
api_router.include_router(migrations.router)

__all__ = ["api_router"]
