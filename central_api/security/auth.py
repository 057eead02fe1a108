"""Shared-secret gate for the registration endpoints.

Compares the X-API-Key header with the configured API_KEY. When no key is
configured the gate is open and every request passes.
"""

import hmac

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

from central_api.logging.audit import get_audit_logger

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def check_api_key(expected: str, provided: str | None) -> bool:
    """True when the gate is disabled or `provided` matches byte for byte."""
    if not expected:
        return True
    if provided is None:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def verify_registration_key(
    request: Request, api_key: str | None = Security(api_key_header)
) -> None:
    """FastAPI dependency guarding /register and /unregister."""
    settings = request.app.state.settings
    if check_api_key(settings.api_key, api_key):
        return

    get_audit_logger().warning(
        "Rejected registration request",
        extra={"audit_data": {
            "path": request.url.path,
            "client_ip": request.client.host if request.client else "unknown",
            "key_present": api_key is not None,
        }},
    )
    raise HTTPException(status_code=401, detail="unauthorized")
