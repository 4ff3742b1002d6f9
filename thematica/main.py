from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from thematica.api.routes import themes
from thematica.config import settings
from thematica.services import logger as log_service  # noqa: F401  configures loguru sinks


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    yield
    # Shutdown


app = FastAPI(
    title="Thematica",
    description="Purpose-adaptive theme extraction for qualitative research",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(themes.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "thematica"}
