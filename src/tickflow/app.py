"""Starlette application exposing health, stats and backfill control for the ingestion service"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .backfill import BackfillAlreadyRunningError
from .config import setup_logging
from .models import utc_now
from .service import IngestionService

logger = logging.getLogger("tickflow.app")


def custom_json_response(data, status_code=200):
    """Create a JSONResponse with custom serialization for Decimal and datetime objects"""
    def custom_encoder(obj):
        if isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        raise TypeError(repr(obj) + " is not JSON serializable")

    json_str = json.dumps(data, default=custom_encoder)
    return Response(json_str, media_type="application/json", status_code=status_code)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string; naive values are taken as UTC."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"expected an ISO-8601 date string, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_flag(value, default: bool = False) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValueError(f"expected true or false, got {value!r}")
    return value


def _parse_symbols(value) -> Optional[list]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        raise ValueError("symbols must be a list of strings")
    symbols = [s.strip().upper() for s in value if s.strip()]
    return symbols or None


async def _read_json(request: Request) -> dict:
    body = await request.body()
    if not body:
        return {}
    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def _service(request: Request) -> IngestionService:
    return request.app.state.service


async def health_check(request):
    """Health check endpoint to verify the server is running"""
    return JSONResponse({
        "status": "healthy",
        "service": "tickflow",
        "version": "0.1.0"
    })


async def health_ready(request):
    """Ready once storage is initialized and components are started"""
    service = _service(request)
    if service.is_ready:
        return JSONResponse({"status": "ready", "service": "tickflow"})
    return JSONResponse({
        "status": "not_ready",
        "service": "tickflow",
        "message": "Storage not initialized"
    }, status_code=503)


async def get_stats(request):
    """Statistics for every ingestion component"""
    try:
        stats = await _service(request).get_stats()
        stats["timestamp"] = utc_now().isoformat()
        return custom_json_response(stats)
    except Exception as e:
        logger.error(f"Error getting stats: {e}")
        return custom_json_response({"error": str(e)}, status_code=500)


def _start_backfill(service: IngestionService, symbols, start, end, force: bool) -> Response:
    try:
        job_id = service.trigger_backfill(symbols=symbols, start=start, end=end, force=force)
    except BackfillAlreadyRunningError as e:
        return custom_json_response({
            "error": str(e),
            "activeJobId": e.job_id
        }, status_code=409)
    except ValueError as e:
        return custom_json_response({"error": str(e)}, status_code=400)

    return custom_json_response({
        "jobId": job_id,
        "status": "started",
        "statusUrl": f"/api/backfill/status/{job_id}"
    }, status_code=202)


async def trigger_backfill(request):
    """Start a backfill job: {symbols?, startDate?, endDate?, force?}"""
    try:
        payload = await _read_json(request)
        symbols = _parse_symbols(payload.get("symbols"))
        start = _parse_datetime(payload.get("startDate"))
        end = _parse_datetime(payload.get("endDate"))
        force = _parse_flag(payload.get("force"))
    except (ValueError, TypeError) as e:
        return custom_json_response({"error": f"Invalid request: {e}"}, status_code=400)

    return _start_backfill(_service(request), symbols, start, end, force)


async def backfill_stocks(request):
    """Forced backfill of specific symbols over the last `days` days"""
    try:
        payload = await _read_json(request)
        symbols = _parse_symbols(payload.get("symbols"))
        days = int(payload.get("days", 7))
        if days <= 0:
            raise ValueError("days must be positive")
    except (ValueError, TypeError) as e:
        return custom_json_response({"error": f"Invalid request: {e}"}, status_code=400)

    if not symbols:
        return custom_json_response({"error": "symbols is required"}, status_code=400)

    end = utc_now()
    return _start_backfill(_service(request), symbols, end - timedelta(days=days), end, True)


async def backfill_status(request):
    """Status of one backfill job"""
    job_id = request.path_params["job_id"]
    job = _service(request).get_backfill_status(job_id)
    if job is None:
        return custom_json_response({"error": f"Backfill job {job_id} not found"}, status_code=404)
    return custom_json_response(job.to_response())


async def backfill_active(request):
    """All backfill jobs that have not finished"""
    jobs = _service(request).list_active_jobs()
    return custom_json_response({
        "jobs": [job.to_response() for job in jobs],
        "count": len(jobs)
    })


routes = [
    Route("/health", health_check, methods=["GET"]),
    Route("/health/ready", health_ready, methods=["GET"]),
    Route("/api/stats", get_stats, methods=["GET"]),
    Route("/api/backfill/trigger", trigger_backfill, methods=["POST"]),
    Route("/api/backfill/stocks", backfill_stocks, methods=["POST"]),
    Route("/api/backfill/status/{job_id}", backfill_status, methods=["GET"]),
    Route("/api/backfill/active", backfill_active, methods=["GET"]),
]


def create_app(service: Optional[IngestionService] = None) -> Starlette:
    """
    Build the ASGI app around an ingestion service.

    The service is started when the app starts and stopped on shutdown.
    """
    service = service or IngestionService()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        await service.start()
        try:
            yield
        finally:
            await service.stop()

    application = Starlette(routes=routes, lifespan=lifespan)
    application.state.service = service
    return application


# Configure logging
setup_logging()

# No connections are opened until the lifespan starts the service
app = create_app()
