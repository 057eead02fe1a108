"""Central API: FastAPI application entry point.

Remote clients register their API URL and credentials here; the server
then relays arbitrary HTTP calls to them through /proxy, injecting the
stored credentials.
"""

import asyncio
import json
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from central_api.config.settings import Settings, get_settings
from central_api.logging.audit import (
    generate_request_id,
    get_audit_logger,
    request_id_var,
    setup_logging,
)
from central_api.registry.models import ClientRecord, InvalidClientError
from central_api.registry.registry import ClientRegistry
from central_api.registry.store import build_registry_store
from central_api.relay.dispatcher import RelayDispatcher
from central_api.security.auth import verify_registration_key

VERSION = "1.0.0"


def get_registry(request: Request) -> ClientRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> RelayDispatcher:
    return request.app.state.dispatcher


async def _read_json(request: Request):
    """Decode the request body; malformed JSON is a 400."""
    body = await request.body()
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise HTTPException(status_code=400, detail=str(e))


def create_app(
    settings: Settings | None = None,
    registry: ClientRegistry | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the application around an explicit registry.

    Without a `registry`, one is created from settings and loaded from the
    persistence file. `http_client` overrides the outbound relay client.
    """
    settings = settings or get_settings()
    # Before load(), so a malformed persistence file is reported as JSON
    setup_logging(settings)
    if registry is None:
        registry = ClientRegistry(
            store=build_registry_store(settings),
            validate=settings.validate_api_url,
        )
        registry.load()
    dispatcher = RelayDispatcher(registry, client=http_client, timeout=settings.upstream_timeout)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle hooks."""
        logger = get_audit_logger()
        if settings.gate_enabled:
            logger.info("API key authentication enabled")
        else:
            logger.warning("No API_KEY set - authentication disabled")
        logger.info(
            "Central API started",
            extra={"audit_data": {"client_count": len(registry), "port": settings.port}},
        )
        yield
        await dispatcher.close()
        logger.info("Central API stopped")

    app = FastAPI(
        title="Central API",
        description="Client directory and authenticated request relay",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.dispatcher = dispatcher

    @app.get("/health")
    async def health(registry: ClientRegistry = Depends(get_registry)):
        return {"status": "healthy", "version": VERSION, "clients": len(registry)}

    @app.post("/register", dependencies=[Depends(verify_registration_key)])
    async def register(request: Request, registry: ClientRegistry = Depends(get_registry)):
        request_id_var.set(generate_request_id())
        payload = await _read_json(request)
        try:
            record = ClientRecord.from_payload(payload)
            await asyncio.to_thread(registry.register, record)
        except InvalidClientError as e:
            raise HTTPException(status_code=400, detail=str(e))

        get_audit_logger().info(
            "Client registered",
            extra={"audit_data": {"client_id": record.id, "api_url": record.api_url}},
        )
        return Response(status_code=200)

    @app.post("/unregister", dependencies=[Depends(verify_registration_key)])
    async def unregister(request: Request, registry: ClientRegistry = Depends(get_registry)):
        request_id_var.set(generate_request_id())
        payload = await _read_json(request)
        if payload is None:
            payload = {}  # a JSON null body names no client
        try:
            record = ClientRecord.from_payload(payload)
        except InvalidClientError as e:
            raise HTTPException(status_code=400, detail=str(e))

        await asyncio.to_thread(registry.unregister, record.id)
        get_audit_logger().info(
            "Client unregistered",
            extra={"audit_data": {"client_id": record.id}},
        )
        return Response(status_code=200)

    @app.get("/clients")
    async def list_clients(registry: ClientRegistry = Depends(get_registry)):
        clients = {client_id: record.to_dict() for client_id, record in registry.list().items()}
        try:
            return JSONResponse(content=clients)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=500, detail=str(e))

    async def proxy(request: Request):
        request_id_var.set(generate_request_id())
        return await get_dispatcher(request).dispatch(request)

    # Plain Starlette route: methods=None relays every HTTP method
    app.add_route("/proxy", proxy, methods=None, include_in_schema=False)

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "central_api.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        # Upstream Date/Server headers are relayed as is
        server_header=False,
        date_header=False,
    )


if __name__ == "__main__":
    run()
