import logging

from fastapi import FastAPI

from schemaflow.config import get_settings
from schemaflow.routers import api_router

settings = get_settings()
log_level = getattr(logging, settings.log_level, logging.INFO)
logging.getLogger("schemaflow").setLevel(log_level)

app = FastAPI(title=settings.app_name)

logger = logging.getLogger(__name__)

app.include_router(api_router, prefix="/api")


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, str]:
    return {"status": "ok"}
