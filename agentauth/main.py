# agentauth/main.py
import ipaddress
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response

from agentauth import proxy
from agentauth.audit import JsonlAuditLog, NullAuditLog
from agentauth.backends import BackendTable
from agentauth.config import load_config, settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

HEALTH_PATH = "/agentauth/health"

_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


def _is_loopback(bind: str) -> bool:
    if bind == "localhost":
        return True
    try:
        return ipaddress.ip_address(bind).is_loopback
    except ValueError:
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    config = load_config(settings.config_path)

    app.state.backends = BackendTable.from_config(config)
    app.state.port = settings.port or config.port
    app.state.bind = settings.bind or config.bind
    if not _is_loopback(app.state.bind):
        logger.warning(
            "Bind address %s is not loopback; agents on other hosts can reach the proxy",
            app.state.bind,
        )

    audit_path = settings.audit_log or config.audit_log
    audit_log = None
    if audit_path:
        audit_log = JsonlAuditLog(audit_path)
        audit_log.open()
        app.state.audit = audit_log
        logger.info("Audit log: %s", audit_path)
    else:
        app.state.audit = NullAuditLog()

    # One client for all proxy requests so upstream connections are pooled.
    # Redirects are relayed to the agent, never followed with credentials attached.
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.upstream_timeout),
        follow_redirects=False,
    )
    for backend in app.state.backends:
        logger.info("  /%s/* → %s", backend.name, backend.target_origin)

    yield

    await app.state.http_client.aclose()
    if audit_log:
        audit_log.close()


app = FastAPI(
    title="agentauth",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)


@app.get(HEALTH_PATH)
async def health(request: Request) -> dict[str, Any]:
    return {
        "status": "ok",
        "backends": request.app.state.backends.names(),
        "port": request.app.state.port,
    }


@app.api_route("/{target:path}", methods=_METHODS)
async def catchall(target: str, request: Request) -> Response:
    return await proxy.dispatch(request)
