"""Sign-Off Inheritance Engine - API Routers"""
from .auth import router as auth_router
from .triggers import router as triggers_router
from .activity import router as activity_router
from .scheduler import router as scheduler_router

__all__ = [
    "auth_router",
    "triggers_router",
    "activity_router",
    "scheduler_router",
]
