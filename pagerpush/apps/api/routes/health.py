from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from pagerpush.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    mock_mode: bool | None = None
    session_state: str | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    runtime = getattr(request.app.state, "notification_runtime", None)
    payload = HealthResponse(
        status="ok",
        mock_mode=runtime.mock_mode if runtime is not None else None,
        session_state=runtime.transport.state.value if runtime is not None else None,
    )
    return success_response(request=request, data=payload.model_dump())
