"""HTTP surface for Hookshot: health, stats and enqueue endpoints."""

from .app import create_app
from .router import ApiState, router, set_state
from .server import ApiServer

__all__ = ["ApiServer", "ApiState", "create_app", "router", "set_state"]
