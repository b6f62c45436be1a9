from __future__ import annotations

import logging

from dotenv import load_dotenv
from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

load_dotenv()  # CAPSULE_* settings from .env if present; must run before the services read os.environ

from ..domain.models import HealthResponse  # noqa: E402
from ..observability.metrics import metrics_middleware_factory  # noqa: E402
from ..services.inference_client import get_inference_client  # noqa: E402
from ..services.session_service import get_session_registry  # noqa: E402
from .routers.capsule import router as capsule_router  # noqa: E402
from .routers.llm import router as llm_router  # noqa: E402
from .routers.session import router as session_router  # noqa: E402
from .routers.surface import router as surface_router  # noqa: E402
from .routers.turn import router as turn_router  # noqa: E402

LOG = logging.getLogger("capsule.api")

app = FastAPI(title="Capsule Compiler API", version="0.1.0")

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

app.include_router(session_router)
app.include_router(turn_router)
app.include_router(surface_router)
app.include_router(llm_router)
app.include_router(capsule_router)


@app.get("/")
def root():
    return {"name": "Capsule Compiler API", "version": "0.1.0"}


@app.get("/health", response_model=HealthResponse)
def health():
    available = get_inference_client().health()
    if not available:
        LOG.warning("llm_service_unavailable")
    return HealthResponse(
        status="ok" if available else "degraded",
        session_id=get_session_registry().current_session_id(),
        llm_service_available=available,
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
