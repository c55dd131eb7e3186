from __future__ import annotations

from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from cycleroute.config import settings
from cycleroute.errors import (
    CapacityExceeded,
    NoRouteFound,
    ProviderUnavailable,
    RouteGenerationError,
    RouteValidationError,
    SynthesisTimeout,
    Unroutable,
)
from cycleroute.models import RouteRequest, RouteResponse
from cycleroute.services.engine import RouteEngine

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        app.state.engine = RouteEngine.from_settings(settings)
    except ProviderUnavailable as e:
        # keep serving /health; route requests answer 503 until a restart
        logger.error("Route engine not loaded: %s", e)
        app.state.engine = None
    yield


api = FastAPI(title="cycleroute", lifespan=lifespan)

api.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Route-Best-Effort", "Retry-After"],
)
api.state.engine = None


def get_engine() -> RouteEngine:
    engine = getattr(api.state, "engine", None)
    if engine is None:
        raise ProviderUnavailable("road_network", "road network is not loaded")
    return engine


def _field_from_loc(loc) -> str:
    """('body', 'waypoints', 2, 'lat') -> 'waypoints[2].lat'"""
    out = ""
    for part in loc:
        if part == "body" and not out:
            continue
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "body"


def _error(status: int, error: str, message: str, headers=None, **extra) -> JSONResponse:
    content = {"error": error, "message": message}
    content.update({k: v for k, v in extra.items() if v is not None})
    return JSONResponse(status_code=status, content=content, headers=headers)


@api.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = _field_from_loc(first.get("loc", ()))
    return _error(400, "validation_error", first.get("msg", "Invalid request"), field=field)


@api.exception_handler(RouteValidationError)
def route_validation_handler(request: Request, exc: RouteValidationError):
    return _error(400, "validation_error", exc.message, field=exc.field)


@api.exception_handler(NoRouteFound)
def no_route_handler(request: Request, exc: NoRouteFound):
    logger.warning("No route: %s", exc.message)
    field = exc.field if isinstance(exc, Unroutable) else None
    return _error(422, "no_route_found", exc.message, field=field, leg_index=exc.leg_index)


@api.exception_handler(CapacityExceeded)
def capacity_handler(request: Request, exc: CapacityExceeded):
    return _error(
        429,
        "capacity_exceeded",
        "Too many route requests in flight, retry shortly",
        headers={"Retry-After": str(exc.retry_after_s)},
    )


@api.exception_handler(SynthesisTimeout)
def timeout_handler(request: Request, exc: SynthesisTimeout):
    logger.warning("Route synthesis timed out: %s", exc)
    return _error(503, "timeout", "Route synthesis did not finish in time", headers={"Retry-After": "1"})


@api.exception_handler(ProviderUnavailable)
def provider_handler(request: Request, exc: ProviderUnavailable):
    logger.warning("Provider unavailable: %s", exc)
    return _error(
        503,
        "provider_unavailable",
        f"{exc.provider} is unavailable",
        headers={"Retry-After": "5"},
    )


@api.exception_handler(RouteGenerationError)
def internal_handler(request: Request, exc: RouteGenerationError):
    logger.error("Route generation failed: %r", exc)
    return _error(500, "internal_error", "Internal error")


@api.get("/health")
def health():
    engine = getattr(api.state, "engine", None)
    if engine is None:
        return {"ok": True, "road_network": None, "spots": None}
    return {
        "ok": True,
        "road_network": {"nodes": engine.network.node_count, "edges": engine.network.edge_count},
        "spots": len(engine.poi_provider) if engine.poi_provider is not None else None,
    }


@api.post("/api/v1/route/generate", response_model=RouteResponse)
def generate_route(req: RouteRequest, response: Response, engine: RouteEngine = Depends(get_engine)):
    try:
        result = engine.generate(req)
    except RouteGenerationError:
        raise
    except Exception:
        logger.exception("Unexpected error while generating a route")
        return _error(500, "internal_error", "Internal error")

    response.headers["X-Route-Best-Effort"] = "true" if result.best_effort else "false"
    return result.response


def run():
    import uvicorn

    uvicorn.run(
        "cycleroute.main:api",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
