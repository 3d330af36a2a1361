from fastapi import APIRouter

from .routes_health import router as health_router
from .routes_jobs import router as jobs_router


api_v1 = APIRouter()
api_v1.include_router(health_router)      # /health
api_v1.include_router(jobs_router)        # /jobs, /sync
