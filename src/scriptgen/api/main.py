from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
import logging
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.generate import router as generate_router
from .routers.usage import router as usage_router
from ..config import Settings
from ..observability.metrics import metrics_middleware_factory
from ..services.model_router import ModelRouter

load_dotenv()  # Load environment variables from .env if present (OPENROUTER_API_KEY, JWT_SECRET, etc.)

app = FastAPI(title="Script Generation API", version="0.1.0")

logging.getLogger("scriptgen.api").setLevel(logging.INFO)

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(generate_router, prefix="/api")
app.include_router(usage_router, prefix="/api")

# CORS (for the web client dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def root():
    return {"name": "Script Generation API", "version": "0.1.0"}


@app.get("/health")
def health():
    settings = Settings.from_env()
    router = ModelRouter()
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "draft_provider": settings.draft_provider,
        "backends": {
            route: (selection.name if selection else None)
            for route, selection in ((r, router.maybe_select_backend(r)) for r in ModelRouter.ROUTING_POLICY)
        },
    }


@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)
