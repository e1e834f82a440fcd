"""
Route Registry

Static table of every URL prefix the service answers, with its auth mode and
the quota classes it draws from besides "general":

- public: no principal needed
- required: the auth gate runs before any handler under the prefix
- per_route: each endpoint declares its own gate (login endpoints stay open)

Feature routers are plugged in by prefix through FEATURE_ROUTERS; prefixes
without a router in this service fall through to the 404 envelope.
"""

import enum
from dataclasses import dataclass

from fastapi import APIRouter, Depends

from jv_backend.core.auth import require_auth
from jv_backend.core.rate_limit import path_matches
from jv_backend.modules.attendance import router as attendance_router


class AuthMode(str, enum.Enum):
    PUBLIC = "public"
    REQUIRED = "required"
    PER_ROUTE = "per_route"


@dataclass(frozen=True)
class RouteBinding:
    prefix: str
    auth: AuthMode
    tag: str
    extra_quota: tuple[str, ...] = ()


ROUTE_BINDINGS: tuple[RouteBinding, ...] = (
    RouteBinding("/api/public", AuthMode.PUBLIC, "Public", ("public-form",)),
    RouteBinding("/api/admin", AuthMode.PER_ROUTE, "Admin", ("auth", "otp-verify", "otp-request")),
    RouteBinding("/api/crm", AuthMode.REQUIRED, "CRM"),
    RouteBinding("/api/lms", AuthMode.REQUIRED, "LMS"),
    RouteBinding("/api/attendance", AuthMode.REQUIRED, "Attendance"),
    RouteBinding("/api/employees", AuthMode.REQUIRED, "Employees"),
    RouteBinding("/api/chat", AuthMode.PER_ROUTE, "Chat"),
    RouteBinding("/api/admission", AuthMode.REQUIRED, "Admission"),
    RouteBinding("/api/field-agent", AuthMode.REQUIRED, "Field Agent"),
    RouteBinding("/api/student", AuthMode.PER_ROUTE, "Student Portal", ("student-auth",)),
    RouteBinding("/api/tasks", AuthMode.REQUIRED, "Tasks"),
    RouteBinding("/api/announcements", AuthMode.REQUIRED, "Announcements"),
    RouteBinding("/api/study-materials", AuthMode.REQUIRED, "Study Materials"),
    RouteBinding("/api/success", AuthMode.REQUIRED, "Success Stories"),
    RouteBinding("/api/documents", AuthMode.REQUIRED, "Documents"),
    RouteBinding("/api/queries", AuthMode.REQUIRED, "Queries"),
    RouteBinding("/api/emp-queries", AuthMode.REQUIRED, "Employee Queries"),
    RouteBinding("/api/notifications", AuthMode.REQUIRED, "Notifications"),
    RouteBinding("/api/trash", AuthMode.REQUIRED, "Trash"),
    RouteBinding("/api/health", AuthMode.PUBLIC, "Health"),
    RouteBinding("/uploads", AuthMode.PUBLIC, "Uploads"),
    RouteBinding("/", AuthMode.PUBLIC, "Root"),
)

# Feature routers shipped by this service, keyed by registry prefix
FEATURE_ROUTERS: dict[str, APIRouter] = {
    "/api/attendance": attendance_router,
}


def find_binding(path: str) -> RouteBinding | None:
    """Most specific binding for `path` ("/" only matches the root itself)."""
    best: RouteBinding | None = None
    for binding in ROUTE_BINDINGS:
        if binding.prefix == "/":
            matched = path == "/"
        else:
            matched = path_matches(path, binding.prefix)
        if matched and (best is None or len(binding.prefix) > len(best.prefix)):
            best = binding
    return best


def build_api_router(
    bindings: tuple[RouteBinding, ...] = ROUTE_BINDINGS,
    feature_routers: dict[str, APIRouter] | None = None,
) -> APIRouter:
    """
    Mount each feature router under its binding's prefix.

    Routers under a `required` binding get the auth gate as a router-level
    dependency.
    """
    routers = FEATURE_ROUTERS if feature_routers is None else feature_routers
    api_router = APIRouter()

    for binding in bindings:
        feature_router = routers.get(binding.prefix)
        if feature_router is None:
            continue
        dependencies = [Depends(require_auth)] if binding.auth is AuthMode.REQUIRED else []
        api_router.include_router(
            feature_router,
            prefix=binding.prefix,
            tags=[binding.tag],
            dependencies=dependencies,
        )

    return api_router
