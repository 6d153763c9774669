from .api import router as api_router
from .debug import router as debug_router
from .proxy import router as proxy_router

__all__ = ["api_router", "debug_router", "proxy_router"]
