from __future__ import annotations

from datetime import UTC, datetime
from dotenv import load_dotenv
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.voice import router as voice_router
from ..observability.metrics import metrics_middleware_factory
from ..services.orchestrator import get_orchestrator

load_dotenv()  # Load environment variables from .env if present (OPENAI_API_KEY, GEMINI_API_KEY, etc.)

app = FastAPI(title="Voicechat API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(chat_router)
app.include_router(voice_router)

# Same routers under /api
app.include_router(chat_router, prefix="/api")
app.include_router(voice_router, prefix="/api")

# CORS (for the web client dev server on localhost:3000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _health() -> dict:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "store": "in-memory",
            "active_streams": get_orchestrator().registry.active_count(),
        },
    }


@app.get("/")
def root():
    return {"name": "Voicechat API", "version": "0.1.0"}


@app.get("/health")
def health():
    return _health()


@app.get("/api/health")
def api_health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    # Expose Prometheus metrics
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.get("/api/metrics")
def api_metrics() -> Response:
    return metrics()
