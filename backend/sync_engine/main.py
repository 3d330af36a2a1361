from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sync_engine.core.config import settings
from sync_engine.core.logging import configure_logging
from sync_engine.api.v1 import api_v1
from sync_engine.db.session import dispose_engine

configure_logging()

app = FastAPI(title=settings.PROJECT_NAME)

# 前端白名单（逗号分隔），例如 BACKEND_CORS_ORIGINS=http://localhost:5173,https://ops.example.com
origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    )


app.include_router(api_v1, prefix=settings.API_PREFIX)


@app.on_event("shutdown")
def _shutdown() -> None:
    dispose_engine()


# 根路径探活（Docker 健康检查）
@app.get("/")
def root():
    return {
        "app": settings.PROJECT_NAME,
        "env": settings.ENVIRONMENT,
        "ok": True
    }
