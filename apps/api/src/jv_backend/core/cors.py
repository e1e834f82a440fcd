"""
Cross-Origin Admission

Origin-based admission for browser clients:
- requests without an Origin header are admitted (curl, mobile apps, server-to-server)
- any *.vercel.app origin is admitted (preview and production deployments)
- otherwise the origin must equal an exact entry or match a wildcard entry,
  where "*" matches any run of characters and everything else is literal

Every OPTIONS request is answered here with 200; admitted origins get the
Access-Control-* headers, blocked ones get none. Any other request from a
blocked origin is also answered here, with an empty 200 and no CORS headers:
its handler never runs.

Each decision is logged as "[CORS] Origin: <origin> - ALLOWED|BLOCKED" at
info; a block adds a "[CORS] Blocked origin" warning listing the policy.

The policy is built once at startup and never mutated.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from jv_backend.core.config import Settings

logger = logging.getLogger(__name__)

VERCEL_SUFFIX = ".vercel.app"

LOCAL_DEV_ORIGINS = (
    "http://localhost:3000",
    "http://localhost:3001",
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:5175",
    "http://localhost:4173",
    "http://localhost:4174",
)

PINNED_ORIGINS = (
    "https://*.vercel.app",
    "https://jv-overseas-pvt-ltd-goz3.vercel.app",
)

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")

ALLOWED_HEADERS = (
    "Content-Type",
    "Authorization",
    "X-Requested-With",
    "x-auth-token",
    "Accept",
    "Origin",
    "Cookie",
    "Pragma",
    "Cache-Control",
)


def _compile_wildcard(entry: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in entry.split("*")))


@dataclass(frozen=True)
class OriginPolicy:
    """
    Immutable origin allow-list.

    Attributes:
        entries: Every configured entry, in configuration order
        exact: Entries without a wildcard
        patterns: Compiled wildcard entries
        allow_credentials: Whether admitted origins may send credentials
    """

    entries: tuple[str, ...]
    exact: frozenset[str]
    patterns: tuple[re.Pattern[str], ...] = field(repr=False)
    allow_credentials: bool = True

    @classmethod
    def from_entries(cls, entries: Iterable[str], allow_credentials: bool = True) -> "OriginPolicy":
        ordered: list[str] = []
        for entry in entries:
            if entry and entry not in ordered:
                ordered.append(entry)
        return cls(
            entries=tuple(ordered),
            exact=frozenset(e for e in ordered if "*" not in e),
            patterns=tuple(_compile_wildcard(e) for e in ordered if "*" in e),
            allow_credentials=allow_credentials,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OriginPolicy":
        """Local dev origins, configured frontend URLs, pinned origins, then ALLOWED_ORIGINS."""
        configured = [
            settings.crm_url,
            settings.student_portal_url,
            settings.main_website_url,
            settings.frontend_url,
        ]
        return cls.from_entries(
            [
                *LOCAL_DEV_ORIGINS,
                *(url for url in configured if url),
                *PINNED_ORIGINS,
                *settings.allowed_origins_list,
            ]
        )

    def is_vercel(self, origin: str) -> bool:
        return origin.endswith(VERCEL_SUFFIX)

    def admits(self, origin: str | None) -> bool:
        if origin is None:
            return True
        if self.is_vercel(origin):
            return True
        if origin in self.exact:
            return True
        return any(pattern.fullmatch(origin) for pattern in self.patterns)

    def summary(self) -> str:
        return ", ".join(self.entries)


class OriginAdmissionMiddleware:
    """ASGI middleware enforcing an OriginPolicy."""

    def __init__(self, app: ASGIApp, policy: OriginPolicy) -> None:
        self.app = app
        self.policy = policy
        self.preflight_headers = {
            "Access-Control-Allow-Methods": ",".join(ALLOWED_METHODS),
            "Access-Control-Allow-Headers": ",".join(ALLOWED_HEADERS),
        }

    def _admit(self, origin: str) -> bool:
        if self.policy.is_vercel(origin):
            logger.info(f"[CORS] Origin: {origin} - ALLOWED (Vercel domain)")
            return True
        if self.policy.admits(origin):
            logger.info(f"[CORS] Origin: {origin} - ALLOWED")
            return True
        logger.info(f"[CORS] Origin: {origin} - BLOCKED")
        logger.warning(f"[CORS] Blocked origin: {origin}. Allowed: {self.policy.summary()}")
        return False

    def _admitted_headers(self, origin: str) -> dict[str, str]:
        headers = {"Access-Control-Allow-Origin": origin}
        if self.policy.allow_credentials:
            headers["Access-Control-Allow-Credentials"] = "true"
        return headers

    def preflight_response(self, origin: str | None) -> Response:
        if origin is None:
            return Response(status_code=200)
        if not self._admit(origin):
            return Response(status_code=200, headers={"Vary": "Origin"})
        headers = {**self._admitted_headers(origin), **self.preflight_headers, "Vary": "Origin"}
        return Response(status_code=200, headers=headers)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")

        if scope["method"] == "OPTIONS":
            response = self.preflight_response(origin)
            await response(scope, receive, send)
            return

        if origin is None:
            await self.app(scope, receive, send)
            return

        if not self._admit(origin):
            response = Response(status_code=200, headers={"Vary": "Origin"})
            await response(scope, receive, send)
            return

        cors_headers = self._admitted_headers(origin)

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers.update(cors_headers)
                headers.add_vary_header("Origin")
            await send(message)

        await self.app(scope, receive, send_with_cors)


__all__ = [
    "ALLOWED_HEADERS",
    "ALLOWED_METHODS",
    "OriginAdmissionMiddleware",
    "OriginPolicy",
]
