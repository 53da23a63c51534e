"""
Client Portal
Request identity for the workflow API.

Every /api/v1 call (health probes excepted) is resolved to an ``Actor``
before the view runs:

    - studio staff      -> admin
    - the project owner -> client
    - billing / project services posting inbound events -> system

With API_AUTH_ENABLED the identity comes from the X-API-Key header (or
``?api_key=``) looked up in API_KEYS, formatted as
``<key>:<role>[:<actor_id>]`` and comma-separated:

    API_KEYS="k-studio:admin:alice,k-acme:client:c-42,k-billing:system"

With auth disabled (development, tests) the caller names itself through
X-Portal-Role (default admin) and X-Portal-User.

State-changing calls must send JSON; an HTML form cannot, which keeps
cross-site form posts out without a CSRF token.
"""

import functools
import logging
from typing import NamedTuple, Optional

from flask import current_app, g, request

from portal.utils.errors import E, api_error
from portal.workflow.actors import Actor, ActorRole

logger = logging.getLogger(__name__)

_OPEN_PREFIXES = ("/api/v1/health",)
_WRITE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_FALSY = ("false", "0", "no", "off")

# Roles a caller holds implicitly: admins may do anything a client or the
# billing service may do.
_GRANTS = {
    ActorRole.ADMIN: frozenset(ActorRole),
    ActorRole.CLIENT: frozenset({ActorRole.CLIENT}),
    ActorRole.SYSTEM: frozenset({ActorRole.SYSTEM}),
}


class KeyIdentity(NamedTuple):
    role: ActorRole
    actor_id: Optional[str]


def parse_api_keys(raw: str) -> dict[str, KeyIdentity]:
    """Parse the API_KEYS setting; an unknown or missing role becomes client."""
    table = {}
    for chunk in (raw or "").split(","):
        fields = [f.strip() for f in chunk.split(":")]
        if not fields[0]:
            continue
        role_name = fields[1].lower() if len(fields) > 1 else ""
        try:
            role = ActorRole(role_name)
        except ValueError:
            if role_name:
                logger.warning("API key with unknown role '%s' treated as client", role_name)
            role = ActorRole.CLIENT
        actor_id = fields[2] if len(fields) > 2 and fields[2] else None
        table[fields[0]] = KeyIdentity(role, actor_id)
    return table


def auth_enabled(app=None) -> bool:
    app = app or current_app
    return str(app.config.get("API_AUTH_ENABLED", "true")).lower() not in _FALSY


def current_actor() -> Actor:
    """Workflow actor for the request being handled."""
    role = getattr(g, "current_user_role", None) or ActorRole.ADMIN.value
    return Actor(getattr(g, "current_actor_id", None), ActorRole(role))


def require_role(role: str):
    """
    Reject the request with 403 unless the caller holds ``role``.

        @require_role("system")
        def payment_confirmed(): ...
    """
    needed = ActorRole(role)

    def decorator(view):
        @functools.wraps(view)
        def wrapper(*args, **kwargs):
            held = getattr(g, "current_user_role", None)
            if held is None:
                return api_error(E.UNAUTHENTICATED, "Authentication required")
            if needed not in _GRANTS[ActorRole(held)]:
                logger.warning("Role %s refused on %s (needs %s)",
                               held, request.path, needed.value)
                return api_error(E.FORBIDDEN, f"This endpoint requires the {needed.value} role",
                                 details={"role": held, "required": needed.value})
            return view(*args, **kwargs)
        return wrapper
    return decorator


def _header_identity() -> KeyIdentity:
    name = request.headers.get("X-Portal-Role", "").strip().lower()
    try:
        role = ActorRole(name) if name else ActorRole.ADMIN
    except ValueError:
        role = ActorRole.ADMIN
    return KeyIdentity(role, request.headers.get("X-Portal-User", "").strip() or None)


def _presented_key() -> Optional[str]:
    return (request.headers.get("X-API-Key", "").strip()
            or request.args.get("api_key", "").strip()
            or None)


def _rejects_body():
    """Non-JSON body on a write: 415."""
    if request.method not in _WRITE_METHODS or not request.content_length:
        return None
    if "application/json" in (request.content_type or ""):
        return None
    return api_error(E.UNSUPPORTED_MEDIA_TYPE,
                     "State-changing requests must send application/json")


def init_auth(app):
    """Resolve the caller on every /api/v1 request."""
    enabled = auth_enabled(app)
    keys = parse_api_keys(app.config.get("API_KEYS", ""))
    if enabled and not keys:
        logger.error("API_AUTH_ENABLED is on but API_KEYS is empty; API calls will fail")

    @app.before_request
    def _identify_caller():
        path = request.path
        if not path.startswith("/api/v1/") or path.startswith(_OPEN_PREFIXES):
            return None
        if request.method == "OPTIONS":
            return None

        refused = _rejects_body()
        if refused is not None:
            return refused

        if not enabled:
            identity = _header_identity()
        else:
            if not keys:
                return api_error(E.INTERNAL, "Server authentication not configured")
            key = _presented_key()
            if key is None:
                return api_error(E.UNAUTHENTICATED, "Provide an X-API-Key header")
            identity = keys.get(key)
            if identity is None:
                logger.warning("Unknown API key %s... on %s", key[:6], path)
                return api_error(E.UNAUTHENTICATED, "Invalid API key")

        g.current_user_role = identity.role.value
        g.current_actor_id = identity.actor_id
        return None

    logger.info("Auth installed (enabled=%s, keys=%d)", enabled, len(keys))
