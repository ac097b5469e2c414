# This project was developed with assistance from AI tools.
"""Field masking middleware and utilities.

Replaces the values of masked fields in JSON response bodies with a fixed
sentinel. The list of fields comes from the access decision that authorized
the request: ``require_permission`` stores it on
``request.state.masked_fields``. The middleware runs after every response so
new endpoints get automatic coverage without per-route masking logic.
"""

import json
import logging
from collections.abc import Iterable
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

MASK_SENTINEL = "[RESTRICTED]"


def mask_fields(obj: Any, fields: Iterable[str]) -> Any:
    """Walk a JSON-compatible structure and mask the named fields.

    Masked values are replaced whatever their type; ``None`` stays ``None``
    so absent data is not reported as restricted.
    """
    names = frozenset(fields)
    if not names:
        return obj

    def walk(node: Any) -> Any:
        if isinstance(node, dict):
            return {
                key: (MASK_SENTINEL if value is not None else None)
                if key in names
                else walk(value)
                for key, value in node.items()
            }
        if isinstance(node, list):
            return [walk(item) for item in node]
        return node

    return walk(obj)


class FieldMaskingMiddleware(BaseHTTPMiddleware):
    """Mask JSON response fields listed in ``request.state.masked_fields``."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)

        fields = getattr(request.state, "masked_fields", None)
        if not fields:
            return response

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            return response

        # Read full body from the streaming response
        body_bytes = b""
        async for chunk in response.body_iterator:
            if isinstance(chunk, str):
                body_bytes += chunk.encode("utf-8")
            else:
                body_bytes += chunk

        try:
            data = json.loads(body_bytes)
            new_body = json.dumps(mask_fields(data, fields)).encode("utf-8")
        except (json.JSONDecodeError, TypeError):
            logger.warning("Could not mask non-JSON body on %s", request.url.path)
            new_body = body_bytes

        headers = {k: v for k, v in response.headers.items() if k.lower() != "content-length"}
        return Response(
            content=new_body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )
