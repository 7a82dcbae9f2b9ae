"""
Request dispatch.

Handlers (the change orchestrator, and host collaborators such as DNS, mail
aliases, certificates, timezone, service keys) share one shape:

    accepts(request) -> bool
    process(request) -> ChangeOutcome

The registry hands each request to the first handler that accepts it.
"""

import logging
from typing import Any, List, Protocol

from .models import ChangeOutcome

logger = logging.getLogger(__name__)


class RequestHandler(Protocol):
    def accepts(self, request: Any) -> bool:
        ...

    def process(self, request: Any) -> ChangeOutcome:
        ...


class HandlerRegistry:
    """Ordered list of handlers; first match wins."""

    def __init__(self, handlers: List[RequestHandler] = None):
        self.handlers: List[RequestHandler] = list(handlers or [])

    def register(self, handler: RequestHandler) -> "HandlerRegistry":
        self.handlers.append(handler)
        return self

    def handler_for(self, request: Any):
        for handler in self.handlers:
            if handler.accepts(request):
                return handler
        return None

    def dispatch(self, request: Any) -> ChangeOutcome:
        handler = self.handler_for(request)
        if handler is None:
            logger.warning(f"No handler accepts {type(request).__name__}")
            return ChangeOutcome(
                result_text="not handled",
                error_text=f"NO_HANDLER: no handler accepts {type(request).__name__}",
                error_code="NO_HANDLER",
            )
        try:
            return handler.process(request)
        except Exception as e:
            # Keeps the agent process alive for the next request
            logger.exception(f"{type(handler).__name__} failed: {e}")
            return ChangeOutcome(
                result_text="not handled",
                error_text=f"HANDLER_ERROR: {e}",
                error_code="HANDLER_ERROR",
            )
