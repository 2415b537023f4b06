from __future__ import annotations

from fastapi import APIRouter

from ..settings import settings

router = APIRouter()


@router.get("/", tags=["health"])
def health():
    return {
        "message": "PrimeChances API",
        "version": "1.0.0",
        "status": "running",
        "port": settings.port,
        "environment": settings.normalized_environment,
        "dynamodb": "configured" if settings.ddb_table_name else "missing",
        "endpoints": [
            "GET /api/opportunities",
            "GET /api/opportunities/{id}",
            "POST /api/opportunities/{id}/bookmark",
            "POST /api/opportunities/{id}/apply",
            "POST /api/submissions",
            "GET /api/notifications",
            "GET /api/profile",
            "POST /api/admin/sweeper/run",
        ],
    }
