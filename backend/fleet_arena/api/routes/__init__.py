"""Route exports for the API layer.

Re-exports each router so callers can include every endpoint group with a single import.
"""

from .internal import router as internal_router
from .rankings import router as rankings_router
from .sessions import router as sessions_router
from .stream import router as stream_router

__all__ = ["internal_router", "rankings_router", "sessions_router", "stream_router"]
