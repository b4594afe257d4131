from .items import router as items_router
from .routes import create_sse_app, create_sse_router

__all__ = ["create_sse_app", "create_sse_router", "items_router"]
