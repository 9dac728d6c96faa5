"""Health-check endpoint.

Process supervisors and load balancers hit this endpoint to verify the
runner is up and responsive.
"""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Return ``{"status": "healthy"}`` while the server accepts requests."""
    return {"status": "healthy"}
