"""Health endpoint reporting queue connectivity."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from resonance.schemas import HealthResponse
from resonance.services.health import HealthService

router = APIRouter(tags=["Health"])


def get_health_service(request: Request) -> HealthService:
    service = getattr(request.app.state, "health_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="worker not started"
        )
    return service


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": HealthResponse}},
)
async def health(service: HealthService = Depends(get_health_service)) -> Response:
    """Return 200 when every queue's store answers, 503 otherwise."""

    report = await service.check()
    body = HealthResponse.model_validate(report.to_dict())
    status_code = status.HTTP_200_OK if report.ok else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
