"""
Health check endpoint.
"""
from datetime import datetime
from fastapi import APIRouter

from leavetrack.db.database import check_connection

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring, including database reachability."""
    database_ok = check_connection()
    return {
        "status": "ok" if database_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "version": "1.0.0",
        "database": "ok" if database_ok else "unreachable",
    }
