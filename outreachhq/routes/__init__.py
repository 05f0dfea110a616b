from .campaigns import router as campaigns_router
from .recipients import router as recipients_router
from .templates import router as templates_router
from .events import router as events_router

__all__ = [
    "campaigns_router",
    "recipients_router",
    "templates_router",
    "events_router",
]
