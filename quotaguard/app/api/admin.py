"""Administrative rate limit endpoints.

All routes require the admin bearer token.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response

from quotaguard.app.core.logging import get_logger
from quotaguard.app.exceptions import PolicyNotFoundError, StoreUnavailableError
from quotaguard.app.middleware.auth import require_admin
from quotaguard.app.services.rate_limit import RateLimitService, get_rate_limit_service

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin/rate-limits",
    tags=["admin-rate-limits"],
    dependencies=[Depends(require_admin)],
)


def get_service() -> RateLimitService:
    return get_rate_limit_service()


@router.get("/policies")
async def list_policies(service: RateLimitService = Depends(get_service)) -> dict[str, Any]:
    """List the policies loaded at startup, in evaluation order."""
    return {
        "policies": [policy.to_dict() for policy in service.registry],
        "service": service.describe(),
    }


@router.get("/{policy_name}/{identifier}/statistics")
async def get_statistics(
    policy_name: str,
    identifier: str,
    service: RateLimitService = Depends(get_service),
) -> dict[str, Any]:
    """Window occupancy, average and peak rate for one identity."""
    try:
        stats = await service.get_statistics(identifier, policy_name)
    except PolicyNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return stats.to_dict()


@router.delete("/{policy_name}/{identifier}", status_code=204)
async def reset_rate_limit(
    policy_name: str,
    identifier: str,
    service: RateLimitService = Depends(get_service),
) -> Response:
    """Clear all recorded requests for one identity under one policy."""
    try:
        await service.reset(identifier, policy_name)
    except PolicyNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Rate limit store unavailable")
    return Response(status_code=204)


@router.post("/{policy_name}/{identifier}/check")
async def check_rate_limit(
    policy_name: str,
    identifier: str,
    service: RateLimitService = Depends(get_service),
) -> dict[str, Any]:
    """Run one check for an identity. Charges a quota unit when allowed."""
    try:
        result = await service.check(identifier, policy_name)
    except PolicyNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return result.to_dict()
