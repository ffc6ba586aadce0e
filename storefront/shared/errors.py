"""
Shared: error taxonomy

Every service raises these from its command layer; ``register_error_handlers``
turns them into HTTP responses, and the HTTP clients in ``clients.py`` turn
those responses back into the same exceptions on the calling side.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class StorefrontError(Exception):
    status_code = 500


class ValidationError(StorefrontError):
    """Bad input. Never retried."""

    status_code = 400


class NotFoundError(ValidationError):
    status_code = 404


class ConflictError(ValidationError):
    """The request is well-formed but the entity is in the wrong state."""

    status_code = 409


class InsufficientResourceError(StorefrontError):
    """Balance or stock shortfall. Triggers compensation, not a system fault."""

    status_code = 409


class InsufficientBalanceError(InsufficientResourceError):
    pass


class InsufficientStockError(InsufficientResourceError):
    def __init__(self, product_id: int, message: str | None = None):
        self.product_id = product_id
        super().__init__(message or f"Insufficient inventory for product: {product_id}")


class NotReadyError(StorefrontError):
    """A referenced entity is not visible yet. Retried with backoff."""

    status_code = 503


class ForeignEventError(StorefrontError):
    """An event rejected by a consumer guard. Dropped, never treated as a failure."""


class RemoteUnavailableError(StorefrontError):
    status_code = 503


_RESPONSE_TYPES: dict[str, type[StorefrontError]] = {
    cls.__name__: cls
    for cls in (
        StorefrontError,
        ValidationError,
        NotFoundError,
        ConflictError,
        InsufficientResourceError,
        InsufficientBalanceError,
        InsufficientStockError,
        NotReadyError,
        RemoteUnavailableError,
    )
}


def error_from_response(status_code: int, body: dict) -> StorefrontError:
    """Rebuild a taxonomy error from another service's error response."""
    detail = str(body.get("detail", ""))
    cls = _RESPONSE_TYPES.get(body.get("error", ""))
    if cls is InsufficientStockError:
        return InsufficientStockError(body.get("product_id"), detail)
    if cls is not None:
        return cls(detail)
    if status_code == 404:
        return NotFoundError(detail)
    if status_code == 409:
        return InsufficientResourceError(detail)
    if 400 <= status_code < 500:
        return ValidationError(detail)
    return RemoteUnavailableError(detail or f"Remote service error: {status_code}")


async def _handle_storefront_error(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientStockError):
        body["product_id"] = exc.product_id
    return JSONResponse(status_code=exc.status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorefrontError, _handle_storefront_error)
