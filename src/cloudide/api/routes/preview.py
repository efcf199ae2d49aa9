"""
Preview reverse proxy.

``/preview/<session_id>/<path>`` is forwarded to ``http://<preview_host>:<port>/<path>``
where ``port`` is the session's allocated port. Status, headers and body of
the guest's response are streamed back unmodified.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from http.cookiejar import CookieJar, DefaultCookiePolicy

import httpx

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from cloudide.api.dependencies import AppSettings, ProxyClient, Registry
from cloudide.core.constants import HOP_BY_HOP_HEADERS, PROXY_METHODS, Settings
from cloudide.utils import metrics
from cloudide.utils.logger import logger

router = APIRouter()

_PAGE = """<!DOCTYPE html>
<html>
<body style="background:#111; color:{color}; font-family:monospace; display:flex; justify-content:center; align-items:center; height:100vh;">
    <h2>{message}</h2>
</body>
</html>
"""

NO_SESSION_PAGE = _PAGE.format(color="#555", message="No server running for this session.")
UNREACHABLE_PAGE = _PAGE.format(color="#f55", message="Proxy Error: the preview server is not responding.")


def create_proxy_client(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Shared client for all preview traffic.

    Cookies set by one guest must never be replayed to another, so the jar rejects everything.
    """
    timeout = httpx.Timeout(
        connect=settings.proxy_connect_timeout,
        read=settings.proxy_read_timeout,
        write=settings.proxy_read_timeout,
        pool=settings.proxy_connect_timeout,
    )
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=False,
        transport=transport,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
    )


def _connection_tokens(value: str) -> set[str]:
    """Header names listed in ``Connection`` are hop-by-hop too."""
    return {token.strip().lower() for token in value.split(",") if token.strip()}


def _forward_headers(request: Request) -> list[tuple[str, str]]:
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(request.headers.get("connection", "")) | {"host"}
    headers = [(name, value) for name, value in request.headers.items() if name.lower() not in drop]

    client_ip = request.client.host if request.client else None
    if client_ip:
        prior = request.headers.get("x-forwarded-for")
        headers = [(n, v) for n, v in headers if n.lower() != "x-forwarded-for"]
        headers.append(("X-Forwarded-For", f"{prior}, {client_ip}" if prior else client_ip))
    if host := request.headers.get("host"):
        headers.append(("X-Forwarded-Host", host))
    headers.append(("X-Forwarded-Proto", request.url.scheme))
    return headers


def _response_headers(upstream: httpx.Response) -> list[tuple[bytes, bytes]]:
    drop = HOP_BY_HOP_HEADERS | _connection_tokens(upstream.headers.get("connection", ""))
    return [(name, value) for name, value in upstream.headers.raw if name.decode("latin-1").lower() not in drop]


def _has_body(request: Request) -> bool:
    return "content-length" in request.headers or "transfer-encoding" in request.headers


async def _relay(upstream: httpx.Response, session_id: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.TransportError as e:
        logger.warning(f"Preview stream for session {session_id} broke off: {type(e).__name__}")
    finally:
        await upstream.aclose()


async def _proxy(
    request: Request,
    session_id: str,
    path: str,
    registry: Registry,
    client: ProxyClient,
    settings: AppSettings,
) -> Response:
    port = registry.lookup(session_id)
    if port is None:
        metrics.proxy_requests_total.labels(result="no_session").inc()
        return HTMLResponse(NO_SESSION_PAGE, status_code=404)

    url = httpx.URL(
        scheme="http",
        host=settings.preview_host,
        port=port,
        path=f"/{path}",
        query=request.url.query.encode("latin-1"),
    )
    upstream_request = client.build_request(
        request.method,
        url,
        headers=_forward_headers(request),
        content=request.stream() if _has_body(request) else None,
    )

    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.TransportError as e:
        metrics.proxy_requests_total.labels(result="unreachable").inc()
        logger.info(f"Preview for session {session_id} unreachable on port {port}: {type(e).__name__}")
        return HTMLResponse(UNREACHABLE_PAGE, status_code=502)

    metrics.proxy_requests_total.labels(result="forwarded").inc()
    response = StreamingResponse(
        _relay(upstream, session_id),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers = _response_headers(upstream)
    return response


@router.api_route("/preview/{session_id}", methods=PROXY_METHODS, include_in_schema=False)
async def preview_root(
    request: Request,
    session_id: str,
    registry: Registry,
    client: ProxyClient,
    settings: AppSettings,
) -> Response:
    return await _proxy(request, session_id, "", registry, client, settings)


@router.api_route("/preview/{session_id}/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def preview(
    request: Request,
    session_id: str,
    path: str,
    registry: Registry,
    client: ProxyClient,
    settings: AppSettings,
) -> Response:
    """Forward a preview request to the session's guest server."""
    return await _proxy(request, session_id, path, registry, client, settings)
