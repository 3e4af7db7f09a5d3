from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from pagerpush.apps.api.response import SuccessEnvelope, success_response
from pagerpush.services.telemetry import counters_snapshot, external_latency_by_integration

router = APIRouter(prefix="/queue", tags=["queue"])


class QueueMetricsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int


class DeliveryTelemetryResponse(BaseModel):
    counters: dict[str, int]
    gateway: dict[str, dict[str, float | int | None]]


@router.get("/metrics", response_model=SuccessEnvelope[QueueMetricsResponse | None])
async def queue_metrics(request: Request) -> dict:
    # Null data, not an error, until the process has built its queue.
    runtime = getattr(request.app.state, "notification_runtime", None)
    if runtime is None:
        return success_response(request=request, data=None)
    metrics = await runtime.metrics()
    return success_response(request=request, data=metrics.to_dict())


@router.get("/telemetry", response_model=SuccessEnvelope[DeliveryTelemetryResponse])
async def delivery_telemetry(request: Request, window_s: int = 300) -> dict:
    payload = DeliveryTelemetryResponse(
        counters=counters_snapshot(),
        gateway=external_latency_by_integration(max(1, window_s)),
    )
    return success_response(request=request, data=payload.model_dump())
