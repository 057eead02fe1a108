"""Relay dispatcher: forwards an inbound /proxy call to a registered client.

The target is resolved from the `client_id` query parameter, the upstream
path from `path`. Every other query parameter, the method, the headers and
the body pass through. Stored credentials are sent as HTTP Basic auth and
the upstream response (status, headers, raw body) is streamed back as is.
"""

from collections.abc import AsyncIterator, Iterable
from urllib.parse import quote, unquote, urlencode, urlsplit, urlunsplit

import httpx
from fastapi import HTTPException, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import QueryParams

from central_api.logging.audit import RequestTimer, get_audit_logger
from central_api.registry.registry import ClientRegistry

# Query parameters consumed by the relay itself
RELAY_PARAMS = frozenset({"client_id", "path"})

# Inbound headers replaced on the outbound request: Host comes from the
# upstream URL, Authorization from the stored credentials.
REPLACED_HEADERS = frozenset({b"host", b"authorization"})

# Sub-delimiters allowed unescaped in a path segment (RFC 3986)
PATH_SAFE = "/:@$&+,;="


def build_upstream_url(api_url: str, path: str, query_items: Iterable[tuple[str, str]]) -> str:
    """Join a client's base URL with a relay path and query.

    Exactly one trailing slash is stripped from the base path before `path`
    is appended verbatim. The joined path is percent-encoded as a whole, so
    `?`, `#` or `%` inside `path` stay part of the path. Any query or
    fragment on the stored URL is replaced by `query_items`. Raises
    ValueError for an unparseable URL.
    """
    parts = urlsplit(api_url)
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"not an absolute URL: {api_url!r}")

    base_path = unquote(parts.path)
    if base_path.endswith("/"):
        base_path = base_path[:-1]

    query = urlencode(list(query_items))
    escaped_path = quote(base_path + path, safe=PATH_SAFE)
    return urlunsplit((parts.scheme, parts.netloc, escaped_path, query, ""))


def build_upstream_headers(raw_headers: Iterable[tuple[bytes, bytes]]) -> list[tuple[bytes, bytes]]:
    """Copy inbound headers, keeping duplicates, minus Host and Authorization."""
    return [(name, value) for name, value in raw_headers if name.lower() not in REPLACED_HEADERS]


def _first_param(params: QueryParams, name: str) -> str:
    # QueryParams.get returns the last value of a repeated key
    values = params.getlist(name)
    return values[0] if values else ""


def _request_body(request: Request) -> AsyncIterator[bytes] | None:
    # Bodiless requests stay bodiless upstream (no chunked empty body)
    if "content-length" not in request.headers and "transfer-encoding" not in request.headers:
        return None
    return request.stream()


class RelayDispatcher:
    """Forwards requests to the API of a registered client."""

    def __init__(
        self,
        registry: ClientRegistry,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self._registry = registry
        self._client = client
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            # Redirects are relayed to the caller, not followed
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=False,
            )
        return self._client

    async def dispatch(self, request: Request) -> StreamingResponse:
        logger = get_audit_logger()
        params = request.query_params

        client_id = _first_param(params, "client_id")
        if not client_id:
            raise HTTPException(status_code=400, detail="client_id is required")

        # The record is a snapshot: a concurrent unregister does not stop this relay
        record = self._registry.lookup(client_id)
        if record is None:
            raise HTTPException(status_code=404, detail="client not found")

        proxy_path = _first_param(params, "path")
        if not proxy_path:
            raise HTTPException(status_code=400, detail="path is required")

        query_items = [(k, v) for k, v in params.multi_items() if k not in RELAY_PARAMS]
        client = await self._get_client()
        try:
            url = build_upstream_url(record.api_url, proxy_path, query_items)
            upstream_request = client.build_request(
                request.method,
                url,
                headers=build_upstream_headers(request.headers.raw),
                content=_request_body(request),
            )
        except (ValueError, httpx.InvalidURL) as e:
            logger.error(
                "Invalid stored API URL",
                extra={"audit_data": {"client_id": client_id, "error": str(e)}},
            )
            raise HTTPException(status_code=500, detail="invalid client API URL")

        with RequestTimer() as timer:
            try:
                upstream = await client.send(
                    upstream_request,
                    auth=httpx.BasicAuth(record.username, record.password),
                    stream=True,
                )
            except httpx.HTTPError as e:
                detail = str(e) or type(e).__name__
                logger.error(
                    "Relay failed",
                    extra={"audit_data": {
                        "client_id": client_id,
                        "method": request.method,
                        "path": proxy_path,
                        "error": detail,
                    }},
                )
                raise HTTPException(status_code=500, detail=detail)

        logger.info(
            "Request relayed",
            extra={"audit_data": {
                "client_id": client_id,
                "method": request.method,
                "path": proxy_path,
                "upstream_status": upstream.status_code,
                "latency_ms": timer.elapsed_ms,
            }},
        )

        response = StreamingResponse(
            self._relay_body(upstream, client_id),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for name, value in upstream.headers.multi_items():
            response.headers.append(name, value)
        return response

    async def _relay_body(self, upstream: httpx.Response, client_id: str) -> AsyncIterator[bytes]:
        """Yield the upstream body undecoded, chunk by chunk."""
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Status and headers are already on the wire
            get_audit_logger().error(
                "Relay stream interrupted",
                extra={"audit_data": {"client_id": client_id, "error": str(e)}},
            )
            raise
        finally:
            await upstream.aclose()

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
