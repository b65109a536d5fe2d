"""API routes for the peer transfer endpoint."""

from weighsync.server.routes.transfer import router as transfer_router

__all__ = ["transfer_router"]
