"""Shared FastAPI dependencies and request helpers"""

from typing import Any, Dict, Optional, Tuple
import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from billing.clients.invoicing_client import InvoicingClient
from billing.clients.legacy_client import LegacyBackendClient

logger = logging.getLogger(__name__)


def get_invoicing_client(request: Request) -> InvoicingClient:
    """Dependency returning the app-wide invoicing client (created by the lifespan)"""
    client = getattr(request.app.state, "invoicing_client", None)
    if client is None:
        client = InvoicingClient()
        request.app.state.invoicing_client = client
    return client


def get_legacy_client(request: Request) -> LegacyBackendClient:
    """Dependency returning the app-wide legacy backend client (created by the lifespan)"""
    client = getattr(request.app.state, "legacy_client", None)
    if client is None:
        client = LegacyBackendClient()
        request.app.state.legacy_client = client
    return client


def error_response(message: str, status_code: int = 400, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message, **extra})


async def read_json_body(request: Request) -> Dict[str, Any]:
    """JSON object body, or ``{}`` when the body is empty or not an object"""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Ignoring request body that is not valid JSON")
        return {}
    return body if isinstance(body, dict) else {}


def is_multipart(request: Request) -> bool:
    return "multipart/form-data" in request.headers.get("content-type", "")


async def read_upload(request: Request, field: str = "file") -> Tuple[Optional[UploadFile], Dict[str, Any]]:
    """
    Uploaded file and the remaining text fields of a multipart request

    Returns:
        ``(file or None, {field: value})``
    """
    form = await request.form()
    upload = form.get(field)
    fields = {k: v for k, v in form.items() if k != field and isinstance(v, str)}
    return (upload if isinstance(upload, UploadFile) else None), fields


def query_flag(request: Request, *names: str) -> bool:
    """True when any of the given query parameters is ``1``/``true``"""
    for name in names:
        value = request.query_params.get(name)
        if value is not None and value.strip().lower() in ("1", "true", "yes"):
            return True
    return False
