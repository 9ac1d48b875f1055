"""
API routers package - exports all FastAPI routers.
"""

from api.approvals import router as approvals_router
from api.chat import router as chat_router
from api.conversations import router as conversations_router
from api.queue import router as queue_router

__all__ = [
    "approvals_router",
    "chat_router",
    "conversations_router",
    "queue_router",
]
