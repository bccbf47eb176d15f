"""
Sign-Off Inheritance Engine - FastAPI Application

Main entry point for the inheritance trigger & disposition backend.

Pipeline (per user, per scheduled run):
- Trigger Evaluator → should the user's plans activate?
- Activation Orchestrator → flip eligible plans exactly once
- Vault Disposition Dispatcher → delete / share / notify / sign-off per vault
- Heir Access Granter → grant pending access, notify heirs
- Audit Sink → audit log + notification outbox
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import auth_router, triggers_router, activity_router, scheduler_router
from .database import init_db

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Sign-Off Inheritance Engine",
    description="""
    Sign-Off Inheritance Engine - Trigger & Disposition Service

    Decides when a user's inheritance plans activate and carries out what
    happens to their vaults and heirs afterwards.

    ## Trigger methods
    1. **inactivity**: no qualifying activity for N days (default 30)
    2. **scheduled**: a fixed date has passed
    3. **manual**: explicit activation by the user or an operator
    4. **death_certificate**: externally verified death

    ## Key Principles
    - A plan is triggered at most once and never reverts
    - Every step is idempotent and resumes from durable state
    - One vault's failure never blocks the others
    - Audit and notification failures never roll back the engine
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(triggers_router)
app.include_router(activity_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Sign-Off Inheritance Engine",
        "version": "1.0.0",
        "description": "Inheritance trigger & disposition service",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
