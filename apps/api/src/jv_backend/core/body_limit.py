"""
JSON payload size limit.

JSON request bodies up to MAX_JSON_BODY_BYTES are accepted. A declared
Content-Length over the limit is rejected before the handler runs; chunked
bodies are counted while the handler reads them.
"""

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from jv_backend.core.errors import PayloadTooLargeError, build_error_response

MAX_JSON_BODY_BYTES = 10 * 1024 * 1024


def _header(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers") or ():
        if key == name:
            return value.decode("latin-1")
    return None


def _is_json(scope: Scope) -> bool:
    content_type = _header(scope, b"content-type")
    if not content_type:
        return False
    media_type = content_type.split(";")[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class BodySizeLimitMiddleware:
    def __init__(
        self,
        app: ASGIApp,
        max_body_size: int = MAX_JSON_BODY_BYTES,
        expose_details: bool = False,
    ) -> None:
        self.app = app
        self.max_body_size = max_body_size
        self.expose_details = expose_details

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not _is_json(scope):
            await self.app(scope, receive, send)
            return

        declared = _header(scope, b"content-length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_body_size:
            response = build_error_response(
                scope, PayloadTooLargeError(self.max_body_size), self.expose_details
            )
            await response(scope, receive, send)
            return

        received = 0

        async def limited_receive() -> Message:
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_body_size:
                    raise PayloadTooLargeError(self.max_body_size)
            return message

        await self.app(scope, limited_receive, send)
