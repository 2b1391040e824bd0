"""SendGate REST API."""

from sendgate.api.router import router

__all__ = ["router"]
