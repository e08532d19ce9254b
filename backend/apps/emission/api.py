from __future__ import annotations

from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from agents.emission import Credentials, DocumentType, EmissionService
from backend.apps.emission.repository import (
    SqlCredentialStore,
    SqlDocumentStore,
    SqlRangeStore,
    get_engine,
)
from backend.core.config import settings
from backend.core.observability.logging import hash_secret, logger

router = APIRouter(prefix="/api/v1/emission")


@lru_cache(maxsize=1)
def get_emission_service() -> EmissionService:
    engine = get_engine()
    return EmissionService(
        SqlDocumentStore(engine),
        SqlRangeStore(engine),
        SqlCredentialStore(engine, initial=Credentials.from_settings),
    )


def _error(status_code: int, code: str, detail: str):
    raise HTTPException(status_code=status_code, detail={"error": code, "detail": detail})


def _auth_admin(authorization: str | None) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        _error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing or invalid Authorization header"
        )
    token = authorization.split(" ", 1)[1].strip()
    allowed = [t.strip() for t in settings.ADMIN_TOKENS.split(",") if t.strip()]
    if not allowed or token not in allowed:
        _error(status.HTTP_403_FORBIDDEN, "forbidden", "Admin token required")
    return hash_secret(token)


def _envelope(result: dict[str, Any], failure_status: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_200_OK if result["success"] else failure_status,
        content=result,
    )


@router.post("/documents/{document_id}/emit")
async def emit_document(
    document_id: int, service: EmissionService = Depends(get_emission_service)
) -> JSONResponse:
    result = await service.emit(document_id)
    if not result["success"] and "data" not in result:
        return _envelope(result, status.HTTP_404_NOT_FOUND)
    return _envelope(result, status.HTTP_422_UNPROCESSABLE_ENTITY)


@router.get("/documents/{document_id}/validate")
def validate_document(
    document_id: int, service: EmissionService = Depends(get_emission_service)
) -> dict[str, Any]:
    return service.validate(document_id)


@router.get("/status/{external_id}")
async def get_status(
    external_id: str,
    doc_type: DocumentType = Query(DocumentType.INVOICE),
    service: EmissionService = Depends(get_emission_service),
) -> JSONResponse:
    result = await service.get_status(external_id, doc_type)
    return _envelope(result, status.HTTP_502_BAD_GATEWAY)


@router.get("/artifacts/{external_id}/{kind}")
async def download_artifact(
    external_id: str,
    kind: str,
    doc_type: DocumentType = Query(DocumentType.INVOICE),
    service: EmissionService = Depends(get_emission_service),
) -> JSONResponse:
    if kind not in ("pdf", "xml"):
        _error(status.HTTP_400_BAD_REQUEST, "invalid_kind", "kind must be pdf or xml")
    result = await service.download_artifact(external_id, kind, doc_type)
    return _envelope(result, status.HTTP_502_BAD_GATEWAY)


@router.get("/ranges/{range_id}/stats")
def get_range_stats(
    range_id: int, service: EmissionService = Depends(get_emission_service)
) -> JSONResponse:
    return _envelope(service.get_range_stats(range_id), status.HTTP_404_NOT_FOUND)


@router.get("/token")
def get_token_info(
    authorization: str | None = Header(None, alias="Authorization"),
    service: EmissionService = Depends(get_emission_service),
) -> dict[str, Any]:
    _auth_admin(authorization)
    return service.get_token_info()


@router.post("/token/invalidate")
def invalidate_token(
    authorization: str | None = Header(None, alias="Authorization"),
    service: EmissionService = Depends(get_emission_service),
) -> dict[str, Any]:
    actor = _auth_admin(authorization)
    logger.info("Token invalidation requested", extra={"actor": actor})
    return service.invalidate_token()


@router.post("/token/test")
async def test_connection(
    authorization: str | None = Header(None, alias="Authorization"),
    service: EmissionService = Depends(get_emission_service),
) -> JSONResponse:
    _auth_admin(authorization)
    return _envelope(await service.test_connection(), status.HTTP_502_BAD_GATEWAY)
