# agentauth/proxy.py
import logging
import time
from collections.abc import AsyncIterator, Iterable, Mapping

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from agentauth import router
from agentauth.audit import AuditEntry
from agentauth.backends import BackendEntry

logger = logging.getLogger(__name__)

# Connection-management headers are never forwarded to a different origin.
_STRIP_REQUEST_HEADERS = {"host", "connection"}

# Only content negotiation and caching metadata reaches the agent; anything
# else (server identity, rate-limit state, tracing ids) is dropped.
ALLOWED_RESPONSE_HEADERS = frozenset({
    "content-type",
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "cache-control",
    "date",
    "etag",
    "vary",
})

_PRELOADED_DROP_HEADERS = {"content-length", "content-encoding", "transfer-encoding"}

UPSTREAM_UNAVAILABLE = "upstream unavailable"


class BodyTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"body exceeded {limit} bytes")
        self.limit = limit


def build_upstream_headers(
    client_headers: Iterable[tuple[str, str]], injected: Mapping[str, str]
) -> list[tuple[str, str]]:
    """Copy client headers, then apply the backend's credential headers.

    A client header with the same name as an injected one is dropped rather
    than merged, so a spoofed credential can never reach the upstream.
    """
    overrides = {k.lower(): v for k, v in injected.items()}
    headers = [
        (k, v)
        for k, v in client_headers
        if k.lower() not in _STRIP_REQUEST_HEADERS and k.lower() not in overrides
    ]
    headers.extend(overrides.items())
    return headers


def filter_response_headers(upstream_headers: Iterable[tuple[str, str]]) -> list[tuple[str, str]]:
    return [(k, v) for k, v in upstream_headers if k.lower() in ALLOWED_RESPONSE_HEADERS]


async def counted_body(chunks: AsyncIterator[bytes], limit: int) -> AsyncIterator[bytes]:
    """Relay body chunks, raising BodyTooLarge before the limit is crossed."""
    received = 0
    async for chunk in chunks:
        if received + len(chunk) > limit:
            raise BodyTooLarge(limit)
        received += len(chunk)
        if chunk:
            yield chunk


def _raw_target(request: Request) -> str:
    # Routing works on the request-target as sent, before any server-side decoding.
    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    path = raw_path.split(b"?", 1)[0].decode("latin-1")
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def _audit(request: Request, entry: AuditEntry) -> None:
    try:
        request.app.state.audit.write(entry)
    except Exception:
        logger.exception("Audit write failed for %s %s", entry.method, entry.path)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"error": code, "message": message}, status_code=status_code)


def _deny(request: Request, code: str, reason: str, path: str, backend: str = "none") -> JSONResponse:
    logger.warning("Denied %s %s (%s)", request.method, path, code)
    _audit(request, AuditEntry.now(
        backend=backend,
        method=request.method,
        path=path,
        allowed=False,
        reason=reason,
    ))
    return _error(403, code, reason)


async def dispatch(request: Request) -> Response:
    """Route, validate and forward one agent request."""
    raw_target = _raw_target(request)
    try:
        route = router.resolve(raw_target)
    except router.RouteError as exc:
        return _deny(request, exc.code, exc.reason, exc.path)

    backend: BackendEntry | None = request.app.state.backends.get(route.backend_name)
    if backend is None:
        return _deny(
            request, "unknown_backend", f"Unknown backend: {route.backend_name}", route.decoded_path
        )

    if not router.is_path_allowed(route.decoded_path, backend.allowed_path_patterns):
        return _deny(
            request,
            "path_denied",
            f"Path not allowed: {route.decoded_path}",
            route.decoded_path,
            backend=backend.name,
        )

    return await forward(request, backend, route)


async def forward(request: Request, backend: BackendEntry, route: router.ResolvedRoute) -> Response:
    method = request.method
    path = route.decoded_path
    limit = backend.max_body_bytes
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    def body_too_large(reached_upstream: bool) -> JSONResponse:
        logger.warning("Body over %d bytes for %s %s %s", limit, backend.name, method, path)
        _audit(request, AuditEntry.now(
            backend=backend.name,
            method=method,
            path=path,
            status=413,
            # No upstream request exists yet on the declared-length path.
            duration_ms=elapsed_ms() if reached_upstream else None,
            allowed=False,
            reason=f"body exceeded {limit} bytes",
        ))
        return _error(413, "body_too_large", f"Request body exceeds {limit} byte limit")

    # Reject on the declared length before opening an upstream connection.
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        return body_too_large(reached_upstream=False)

    headers = build_upstream_headers(request.headers.items(), backend.injected_headers)
    has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
    content = counted_body(request.stream(), limit) if has_body else None

    client: httpx.AsyncClient = request.app.state.http_client
    try:
        upstream_request = client.build_request(
            method,
            router.upstream_url(backend.target_origin, route),
            headers=headers,
            content=content,
        )
    except httpx.InvalidURL as exc:
        return _deny(request, "invalid_path", f"Invalid upstream URL: {exc}", path, backend=backend.name)

    try:
        upstream_response = await client.send(upstream_request, stream=True)
    except BodyTooLarge:
        return body_too_large(reached_upstream=True)
    except ClientDisconnect:
        logger.info("Client disconnected during %s %s %s", backend.name, method, path)
        _audit(request, AuditEntry.now(
            backend=backend.name,
            method=method,
            path=path,
            duration_ms=elapsed_ms(),
            allowed=True,
            reason="client disconnected",
        ))
        return Response(status_code=400)
    except httpx.HTTPError as exc:
        # Real cause goes to the audit trail only; the agent sees a fixed message.
        logger.warning("Upstream %s failed for %s %s: %s", backend.name, method, path, type(exc).__name__)
        _audit(request, AuditEntry.now(
            backend=backend.name,
            method=method,
            path=path,
            status=502,
            duration_ms=elapsed_ms(),
            allowed=True,
            reason=f"upstream error: {type(exc).__name__}: {exc}",
        ))
        return _error(502, "upstream_error", UPSTREAM_UNAVAILABLE)

    _audit(request, AuditEntry.now(
        backend=backend.name,
        method=method,
        path=path,
        status=upstream_response.status_code,
        duration_ms=elapsed_ms(),
        allowed=True,
    ))
    if upstream_response.status_code >= 500:
        logger.warning(
            "Upstream %s returned %s for %s %s",
            backend.name, upstream_response.status_code, method, path,
        )

    status_code = upstream_response.status_code or 502
    relayed_headers = filter_response_headers(upstream_response.headers.multi_items())

    if upstream_response.is_stream_consumed:
        # A transport that hands back an already-read response leaves only the
        # decoded body; the framing headers no longer describe it.
        body = upstream_response.content
        await upstream_response.aclose()
        response = Response(content=body, status_code=status_code)
        for key, value in relayed_headers:
            if key.lower() not in _PRELOADED_DROP_HEADERS:
                response.headers.append(key, value)
        return response

    async def relay() -> AsyncIterator[bytes]:
        # Response bodies are relayed as received: not decoded, not capped.
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            # Headers are already sent; aborting is the only honest signal left.
            logger.warning(
                "Upstream %s dropped mid-response for %s %s: %s",
                backend.name, method, path, type(exc).__name__,
            )
            raise
        finally:
            await upstream_response.aclose()

    response = StreamingResponse(
        relay(),
        status_code=status_code,
        background=BackgroundTask(upstream_response.aclose),
    )
    for key, value in relayed_headers:
        response.headers.append(key, value)
    return response
