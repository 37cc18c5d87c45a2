"""
FastAPI application entry point.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leavetrack.config import get_settings
from leavetrack.db.database import init_db
from leavetrack.routes import health, replies
from leavetrack.utils.logger import setup_logging

# Setup logging
setup_logging()

# Create FastAPI app
app = FastAPI(
    title="LeaveTrack",
    description="Time-off requests with approver replies tracked through Gmail threads",
    version="1.0.0",
)

# Get settings
settings = get_settings()

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(replies.router, prefix="/api", tags=["Replies"])


@app.on_event("startup")
def create_tables():
    init_db()


@app.get("/")
async def root():
    """Root endpoint - redirects to docs."""
    return {
        "message": "LeaveTrack API",
        "docs": "/docs",
        "health": "/api/health",
    }
