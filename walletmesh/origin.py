"""
Origin validation and identifier canonicalization (trust boundary concerns).

Depends on: config
"""

import uuid
from urllib.parse import urlparse

from walletmesh.config import MAX_ORIGIN_LENGTH, UNSCOPED

_DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443}


def canonical_origin(origin: str) -> str:
    """Reduce an origin (or a URL) to scheme://host[:port].

    Scheme and host are lowercased and default ports dropped. Anything that
    does not parse as scheme://host is returned unchanged, so it only ever
    equals itself.
    """
    if origin == UNSCOPED:
        return origin
    try:
        parsed = urlparse(origin.strip())
        port = parsed.port
    except (ValueError, AttributeError):
        return origin
    if not parsed.scheme or not parsed.hostname:
        return origin
    scheme = parsed.scheme.lower()
    host = parsed.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def validate(expected: str, actual: str) -> bool:
    """True iff expected is UNSCOPED or both origins are the same origin."""
    if expected == UNSCOPED:
        return True
    if not isinstance(actual, str) or actual == UNSCOPED:
        return False
    return canonical_origin(expected) == canonical_origin(actual)


def validate_origin(origin: str) -> "str | None":
    """Check that a sender origin is usable. Returns error string or None."""
    if not isinstance(origin, str) or not origin:
        return "Origin is required"
    if len(origin) > MAX_ORIGIN_LENGTH:
        return f"Origin exceeds maximum length ({MAX_ORIGIN_LENGTH} chars)"
    if origin == UNSCOPED:
        return "Origin must be concrete, not '*'"
    return None


def canonical_id(value) -> str:
    """Canonical string form of a discovery / session identifier.

    Identifiers are UUIDs compared as lowercase hyphenated strings, so
    "350670DB-..." and "{350670db-...}" name the same discovery id.
    Raises ValueError for anything that is not a UUID.
    """
    if isinstance(value, uuid.UUID):
        return str(value)
    if not isinstance(value, str):
        raise ValueError(f"identifier must be a string, got {type(value).__name__}")
    return str(uuid.UUID(value.strip()))


def new_discovery_id() -> str:
    """Fresh, globally unique discovery id."""
    return str(uuid.uuid4())
