"""Secret / PII / stack-trace sanitizer for structured logs.

Strings are handled by size:
 1. longer than MAX_STR_LOG      -> replaced by length + sha256 prefix
 2. longer than MAX_STR_FOR_REGEX -> only the credential prefix check runs
 3. otherwise                    -> full pattern replacement

Patterns are anchored on non-whitespace runs and compiled once at import.
"""

import hashlib
import re
import traceback
from typing import Any

MAX_STR_LOG: int = 2048
MAX_STR_FOR_REGEX: int = 512
MAX_DEPTH: int = 6

REDACTED = "[REDACTED]"

# Dict keys whose values never reach a log line (compared lower-cased)
_SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "authorization",
        "password",
        "access_token",
        "refresh_token",
        "jwt",
        "api_key",
        "secret",
        "admin_token",
        "x-admin-token",
        "email",
        "phone",
        "card",
        "payment_method",
    }
)

_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Bearer \S+"),
    re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),  # bare JWT
    re.compile(r"(password|access_token|refresh_token|apikey|api_key)=\S+"),
    re.compile(r"postgres(?:ql)?://[^:\s]+:[^@\s]+@"),  # DSN with inline password
)

_CREDENTIAL_PREFIXES = ("Bearer ", "Basic ", "eyJ")


def sanitize_str(s: str) -> str:
    """Return a log-safe rendition of ``s``."""
    if not isinstance(s, str):
        return s  # type: ignore[return-value]

    n = len(s)
    if n > MAX_STR_LOG:
        digest = hashlib.sha256(s.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={n} sha256={digest}]"

    if n > MAX_STR_FOR_REGEX:
        return REDACTED if s.startswith(_CREDENTIAL_PREFIXES) else s

    for pattern in _PATTERNS:
        s = pattern.sub(REDACTED, s)
    return s


def sanitize_obj(obj: Any, depth: int = 0) -> Any:
    """Recursively sanitize a log ``extra`` value.

    Sensitive dict keys are redacted, strings go through sanitize_str and
    nesting deeper than MAX_DEPTH is cut off.
    """
    if depth >= MAX_DEPTH:
        return "[DEPTH_LIMIT]"

    if isinstance(obj, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _SENSITIVE_KEYS
            else sanitize_obj(value, depth + 1)
            for key, value in obj.items()
        }

    if isinstance(obj, (list, tuple)):
        return [sanitize_obj(item, depth + 1) for item in obj]

    if isinstance(obj, str):
        return sanitize_str(obj)

    return obj


def sanitize_exc(exc_info: tuple) -> str:
    """Format an exc_info tuple into a sanitized traceback string.

    Locals are never captured so request payloads stay out of the logs.
    """
    _type, value, _tb = exc_info
    if value is None:
        return ""
    try:
        te = traceback.TracebackException.from_exception(value, capture_locals=False)
        return sanitize_str("".join(te.format()))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
