"""
Rate Limiting Module

Fixed-window request quotas keyed by client IP, enforced as ASGI middleware.

Every request to /api, /uploads or the status page consumes the "general" quota. Sensitive paths additionally
consume a narrower class (login, OTP, public forms). Classes are counted
independently, so a request to /api/admin/login draws from both "general"
and "auth". Paths sharing a class share one counter per client.

Each client's window opens on its first hit and lasts WINDOW_SECONDS; the
count resets when it expires. Responses carry the standard RateLimit-Limit,
RateLimit-Remaining and RateLimit-Reset headers of the narrowest class applied.

Counters live in process memory. Multiple server instances each keep their
own counters.
"""

import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from jv_backend.core.proxy import client_ip

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 15 * 60

# Expired counters are swept at most this often
SWEEP_INTERVAL_SECONDS = 60


@dataclass(frozen=True)
class QuotaPolicy:
    """A named fixed-window quota class."""

    name: str
    limit: int
    message: str
    window_seconds: int = WINDOW_SECONDS


GENERAL = QuotaPolicy("general", 5000, "Too many requests, please try again later")
AUTH = QuotaPolicy("auth", 200, "Too many login attempts, please try again after 15 minutes")
OTP_VERIFY = QuotaPolicy(
    "otp-verify", 10, "Too many verification attempts. Please wait 15 minutes."
)
OTP_REQUEST = QuotaPolicy(
    "otp-request", 5, "Too many OTP requests. Please wait 15 minutes before requesting again."
)
STUDENT_AUTH = QuotaPolicy(
    "student-auth", 200, "Too many login attempts, please try again after 15 minutes"
)
PUBLIC_FORM = QuotaPolicy("public-form", 100, "Too many submissions, please try again later")

# Everything the app serves itself: the API, uploaded files and the status page
GENERAL_PREFIXES = ("/api", "/uploads")
GENERAL_EXACT_PATHS = frozenset({"/"})

# Path prefix -> narrower class, applied on top of GENERAL
QUOTA_RULES: tuple[tuple[str, QuotaPolicy], ...] = (
    ("/api/admin/login", AUTH),
    ("/api/admin/verify-otp", OTP_VERIFY),
    ("/api/admin/refresh-token", AUTH),
    ("/api/admin/profile/password/request-otp", OTP_REQUEST),
    ("/api/admin/employees/request-otp", OTP_REQUEST),
    ("/api/student/login", STUDENT_AUTH),
    ("/api/public/intake", PUBLIC_FORM),
    ("/api/public/enquiry", PUBLIC_FORM),
)


def path_matches(path: str, prefix: str) -> bool:
    """Mount-style match: the prefix itself or anything below it, case-insensitive."""
    normalized = path.lower().rstrip("/") or "/"
    return normalized == prefix or normalized.startswith(prefix + "/")


def policies_for_path(
    path: str,
    rules: Iterable[tuple[str, QuotaPolicy]] = QUOTA_RULES,
    general: QuotaPolicy = GENERAL,
) -> list[QuotaPolicy]:
    """Quota classes a request to `path` consumes, general first."""
    if path not in GENERAL_EXACT_PATHS and not any(
        path_matches(path, prefix) for prefix in GENERAL_PREFIXES
    ):
        return []
    policies = [general]
    for prefix, policy in rules:
        if path_matches(path, prefix) and policy not in policies:
            policies.append(policy)
    return policies


@dataclass
class QuotaCounter:
    count: int
    window_start: float
    window_seconds: int


@dataclass(frozen=True)
class QuotaResult:
    policy: QuotaPolicy
    allowed: bool
    remaining: int
    reset_seconds: int

    def headers(self) -> dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.policy.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.reset_seconds)
        return headers


class FixedWindowStore:
    """
    In-memory fixed-window counters keyed by (class, client).

    Only touched from the event loop, so no locking is needed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[tuple[str, str], QuotaCounter] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        return len(self._counters)

    def hit(self, policy: QuotaPolicy, key: str) -> QuotaResult:
        """
        Count one request from `key` against `policy`.

        Args:
            policy: Quota class being consumed
            key: Client identity (IP address)

        Returns:
            QuotaResult; allowed is False once the count exceeds the limit
        """
        now = self._clock()
        self._maybe_sweep(now)

        counter_key = (policy.name, key)
        counter = self._counters.get(counter_key)
        if counter is None or now - counter.window_start >= policy.window_seconds:
            counter = QuotaCounter(count=0, window_start=now, window_seconds=policy.window_seconds)
            self._counters[counter_key] = counter

        counter.count += 1
        reset_at = counter.window_start + policy.window_seconds
        return QuotaResult(
            policy=policy,
            allowed=counter.count <= policy.limit,
            remaining=max(0, policy.limit - counter.count),
            reset_seconds=max(0, math.ceil(reset_at - now)),
        )

    def reset(self) -> None:
        self._counters.clear()

    def _maybe_sweep(self, now: float) -> None:
        if now - self._last_sweep < SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = now
        expired = [
            key
            for key, counter in self._counters.items()
            if now - counter.window_start >= counter.window_seconds
        ]
        for key in expired:
            del self._counters[key]


class QuotaMiddleware:
    """
    Enforce quota classes for every counted request.

    Classes are consumed in order (general first). The first exhausted class
    answers 429 with its message; later classes are not consumed.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: FixedWindowStore | None = None,
        rules: Iterable[tuple[str, QuotaPolicy]] = QUOTA_RULES,
        general: QuotaPolicy = GENERAL,
    ) -> None:
        self.app = app
        self.store = store if store is not None else FixedWindowStore()
        self.rules = tuple(rules)
        self.general = general

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        policies = policies_for_path(scope["path"], self.rules, self.general)
        if not policies:
            await self.app(scope, receive, send)
            return

        key = client_ip(scope)
        result: QuotaResult | None = None
        for policy in policies:
            result = self.store.hit(policy, key)
            if not result.allowed:
                logger.warning(
                    f"Rate limit exceeded for {key} on {scope['path']}: "
                    f"class={policy.name} limit={policy.limit}/{policy.window_seconds}s"
                )
                response = JSONResponse(
                    status_code=429,
                    content={"msg": policy.message},
                    headers=result.headers(),
                )
                await response(scope, receive, send)
                return

        rate_headers = result.headers()

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).update(rate_headers)
            await send(message)

        await self.app(scope, receive, send_with_headers)


__all__ = [
    "FixedWindowStore",
    "GENERAL",
    "QUOTA_RULES",
    "QuotaMiddleware",
    "QuotaPolicy",
    "QuotaResult",
    "WINDOW_SECONDS",
    "policies_for_path",
]
