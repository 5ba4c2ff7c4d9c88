"""
HTTP API for the resource monitor.

CRUD endpoints over the measurement store:
- GET    /measurements        list every measurement
- POST   /measurements        create a measurement (id ignored)
- GET    /measurements/{id}   fetch one measurement
- PUT    /measurements/{id}   replace one measurement
- DELETE /measurements/{id}   delete one measurement

MonitorErrors raised by handlers are mapped to status codes by
http_status_for() and returned as {"error": "<message>"}. Request bodies must
carry timestamp, cpu and ram; malformed bodies return 400 rather than
FastAPI's default 422.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from resource_monitor import __version__
from resource_monitor.errors import MonitorError, ValidationError, http_status_for
from resource_monitor.logging import get_logger
from resource_monitor.metrics.storage import MeasurementStore
from resource_monitor.models import Measurement, MeasurementBody

logger = get_logger(__name__)

router = APIRouter(prefix="/measurements", tags=["measurements"])


def get_store(request: Request) -> MeasurementStore:
    """Return the store attached to the application."""
    return request.app.state.store


@router.get("", response_model=list[Measurement])
async def list_measurements(
    store: MeasurementStore = Depends(get_store),
) -> list[Measurement]:
    """Return every stored measurement."""
    return await store.find_all()


@router.post("", response_model=Measurement, status_code=status.HTTP_201_CREATED)
async def create_measurement(
    body: MeasurementBody,
    store: MeasurementStore = Depends(get_store),
) -> Measurement:
    """Create a measurement; any client-supplied id is ignored."""
    measurement = Measurement(**body.model_dump(exclude={"id"}))
    await store.insert(measurement)
    return measurement


@router.get("/{measurement_id}", response_model=Measurement)
async def get_measurement(
    measurement_id: str,
    store: MeasurementStore = Depends(get_store),
) -> Measurement:
    """Fetch one measurement by id."""
    return await store.find_by_id(measurement_id)


@router.put("/{measurement_id}", response_model=Measurement)
async def update_measurement(
    measurement_id: str,
    body: MeasurementBody,
    store: MeasurementStore = Depends(get_store),
) -> Measurement:
    """Replace a stored measurement with the request body."""
    measurement = Measurement(**body.model_dump(exclude={"id"}))
    return await store.replace(measurement_id, measurement)


@router.delete("/{measurement_id}")
async def delete_measurement(
    measurement_id: str,
    store: MeasurementStore = Depends(get_store),
) -> dict[str, Any]:
    """Delete one measurement by id."""
    await store.delete(measurement_id)
    return {"id": measurement_id, "deleted": True}


async def _monitor_error_handler(_request: Request, exc: MonitorError) -> JSONResponse:
    """Convert a MonitorError into an error response."""
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.error(
            "Request failed",
            extra={"error": exc.message, "error_code": exc.error_code},
        )
    return JSONResponse(status_code=status_code, content={"error": exc.message})


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies and parameters as 400."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in errors
    )
    return await _monitor_error_handler(
        request, ValidationError(message or "Malformed request body")
    )


def create_app(store: MeasurementStore) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        store: Shared MeasurementStore used by every handler.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Resource Monitor",
        description="CPU and RAM utilization measurements",
        version=__version__,
    )
    app.state.store = store

    app.add_exception_handler(MonitorError, _monitor_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
