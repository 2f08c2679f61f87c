# agentauth/router.py
import re
from dataclasses import dataclass
from urllib.parse import quote, unquote, unquote_to_bytes

WILDCARD = "*"

_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_SEGMENT_SEP = re.compile(r"[/\\]")

# Extra decodings tried when looking for a hidden "..": double and triple
# encoded forms are caught, the forwarded path is only ever decoded once.
_TRAVERSAL_DECODE_PASSES = 3

# Characters left as-is when the decoded path is re-quoted for the upstream URL.
_PATH_SAFE = "/:@!$&'()*+,;=-._~"


class RouteError(Exception):
    """Request-target rejected before backend lookup.

    ``path`` is what the audit trail records: the decoded backend-relative
    path when decoding succeeded, the raw one otherwise.
    """

    def __init__(self, code: str, reason: str, path: str = "") -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason
        self.path = path


@dataclass(frozen=True)
class ResolvedRoute:
    backend_name: str
    decoded_path: str
    query: str = ""

    @property
    def forward_path(self) -> str:
        return f"{self.decoded_path}?{self.query}" if self.query else self.decoded_path


def _percent_decode(raw_path: str) -> str:
    if _BAD_ESCAPE.search(raw_path):
        raise RouteError("invalid_path", f"Malformed URL encoding: {raw_path}", raw_path)
    try:
        return unquote_to_bytes(raw_path).decode("utf-8")
    except UnicodeDecodeError:
        raise RouteError("invalid_path", f"Malformed URL encoding: {raw_path}", raw_path)


def has_traversal(path: str) -> bool:
    """Return True if any segment of the (already decoded) path is ``..``."""
    return any(segment == ".." for segment in _SEGMENT_SEP.split(path))


def _hides_traversal(decoded: str) -> bool:
    # Scratch decodings only; a literal "%41" in a file name stays "%41".
    path = decoded
    for _ in range(_TRAVERSAL_DECODE_PASSES):
        if not _ESCAPE.search(path):
            return False
        path = unquote(path)
        if has_traversal(path):
            return True
    return False


def resolve(raw_target: str) -> ResolvedRoute:
    """Split a request-target into backend name, decoded path and query.

    /anthropic/v1/messages?x=1 → ("anthropic", "/v1/messages", "x=1")

    The path is percent-decoded exactly once. The traversal check also looks
    through further decodings, so ``%2e%2e`` and ``%252e%252e`` are caught
    the same way as a literal ``..``.
    """
    slash_idx = raw_target.find("/", 1)
    if not raw_target.startswith("/") or slash_idx == -1:
        raise RouteError(
            "invalid_path", f"No backend in path: {raw_target}", raw_target.partition("?")[0]
        )

    backend_name = raw_target[1:slash_idx]
    remainder = raw_target[slash_idx:]
    raw_path, _, query = remainder.partition("?")

    decoded = _percent_decode(raw_path)
    if has_traversal(decoded) or _hides_traversal(decoded):
        raise RouteError("path_traversal", f"Path traversal rejected: {decoded}", decoded)

    return ResolvedRoute(backend_name=backend_name, decoded_path=decoded, query=query)


def is_path_allowed(path: str, patterns) -> bool:
    """Check a decoded path against a backend's allow-patterns.

    No patterns → everything allowed. A pattern ending in ``*`` is a prefix
    match, any other pattern must equal the path exactly.
    """
    if not patterns:
        return True

    for pattern in patterns:
        if pattern.endswith(WILDCARD):
            if path.startswith(pattern[: -len(WILDCARD)]):
                return True
        elif path == pattern:
            return True
    return False


def upstream_url(origin: str, route: ResolvedRoute) -> str:
    """Build the upstream URL for a resolved route.

    The decoded path is re-quoted so characters such as ``?`` or ``%`` that
    were escaped by the client stay part of the path; the query string is
    appended untouched.
    """
    url = origin.rstrip("/") + quote(route.decoded_path, safe=_PATH_SAFE)
    if route.query:
        url += f"?{route.query}"
    return url
