"""
RPC error responses.

Callable endpoints answer with ``{"success": false, "error": {...}}`` and an
HTTP status derived from the error category.
"""

import logging
from typing import Any, Callable, Coroutine

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

logger = logging.getLogger("smartcharge.api")

RPC_STATUS_CODES = {
    "unauthenticated": 401,
    "invalid-argument": 400,
    "not-found": 404,
    "failed-precondition": 412,
    "internal": 500,
}


class RpcError(Exception):
    """An error a callable endpoint reports to its client."""

    def __init__(self, status: str, message: str):
        if status not in RPC_STATUS_CODES:
            raise ValueError(f"Unknown RPC status {status!r}")
        super().__init__(message)
        self.status = status
        self.message = message

    @property
    def http_status(self) -> int:
        return RPC_STATUS_CODES[self.status]

    def to_dict(self) -> dict:
        return {"success": False, "error": {"status": self.status, "message": self.message}}


async def rpc_error_handler(request: Request, exc: RpcError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


class RpcRoute(APIRoute):
    """
    Route class for callable endpoints.

    Body validation failures become ``invalid-argument`` and unexpected
    exceptions become ``internal``, so callers only ever see the structured
    error result. Validation details are logged, not echoed back.
    """

    def get_route_handler(self) -> Callable[[Request], Coroutine[Any, Any, Response]]:
        handler = super().get_route_handler()

        async def rpc_route_handler(request: Request) -> Response:
            try:
                return await handler(request)
            except (RpcError, HTTPException):
                raise
            except RequestValidationError as e:
                logger.warning("Invalid arguments for %s: %s", request.url.path, e.errors())
                raise RpcError("invalid-argument", "Invalid request arguments.") from e
            except Exception as e:
                logger.exception("Unhandled error in %s", request.url.path)
                raise RpcError("internal", "An internal error occurred.") from e

        return rpc_route_handler
