"""API endpoints for attachment management."""

import json
import logging
from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from starlette.datastructures import UploadFile

from attachment_service.config_models import AppConfig
from attachment_service.errors import BadRequestError, PayloadTooLargeError
from attachment_service.services.attachments import (
    AttachmentService,
    AttachmentView,
    CallerIdentity,
    SecurityRealm,
)
from attachment_service.services.content_negotiation import OCTET_STREAM, octet_headers
from attachment_service.storage.attachments import JSON_FILENAME
from attachment_service.web.dependencies import (
    get_app_config,
    get_attachment_service,
    require_caller,
)

logger = logging.getLogger(__name__)

attachments_api_router = APIRouter()

OAUTH2 = SecurityRealm.OAUTH2
INTERNAL = SecurityRealm.INTERNAL
EXTERNAL = SecurityRealm.EXTERNAL


class InternalAttachmentCreate(BaseModel):
    """Body of an internal service registering an attachment stored elsewhere."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    integrity_hash: str
    owner_address: str


def _check_size(size: int, max_upload_size: int) -> None:
    if size > max_upload_size:
        raise PayloadTooLargeError(
            f"Upload of {size} bytes exceeds limit of {max_upload_size} bytes"
        )


async def _read_json_body(request: Request, max_upload_size: int) -> Any:  # noqa: ANN401
    body = await request.body()
    _check_size(len(body), max_upload_size)
    if not body.strip():
        raise BadRequestError("Empty request body", detail="nothing to upload")
    try:
        return json.loads(body)
    except ValueError as e:
        raise BadRequestError(
            f"Request body is not valid JSON: {e}", detail="Invalid JSON body"
        ) from e


@attachments_api_router.get(
    "",
    summary="List attachments",
    description="List attachment metadata, optionally filtered.",
    response_model_by_alias=True,
)
async def list_attachments(
    caller: Annotated[CallerIdentity, Depends(require_caller(OAUTH2, INTERNAL))],
    attachment_service: Annotated[AttachmentService, Depends(get_attachment_service)],
    updated_since: datetime | None = None,
    owner: str | None = None,
    integrity_hash: Annotated[str | None, Query(alias="integrityHash")] = None,
    ids: Annotated[list[str] | None, Query(alias="id")] = None,
) -> list[AttachmentView]:
    return await attachment_service.list_attachments(
        updated_since=updated_since,
        owner=owner,
        integrity_hash=integrity_hash,
        ids=ids,
    )


@attachments_api_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create attachment",
    description=(
        "Upload a file (multipart field 'file') or a JSON document. Internal "
        "services may instead register an existing hash for an owner."
    ),
    response_model_by_alias=True,
)
async def create_attachment(
    request: Request,
    caller: Annotated[CallerIdentity, Depends(require_caller(OAUTH2, INTERNAL))],
    attachment_service: Annotated[AttachmentService, Depends(get_attachment_service)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AttachmentView:
    """
    Create an attachment.

    A multipart upload is stored under its original filename. A JSON body is
    re-serialised and stored under the filename ``json`` so that downloads
    can be negotiated back to JSON. Internal callers sending no file register
    an attachment by ``integrityHash`` and ``ownerAddress`` instead.
    """
    max_upload_size = config.attachments.max_upload_size
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        _check_size(int(content_length), max_upload_size)

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if isinstance(upload, UploadFile):
            content = await upload.read()
            _check_size(len(content), max_upload_size)
            return await attachment_service.create_attachment(
                content, upload.filename or "upload"
            )
        if not caller.is_internal:
            raise BadRequestError(
                "Multipart upload without a file", detail="nothing to upload"
            )
        body: Any = dict(form)
    else:
        body = await _read_json_body(request, max_upload_size)

    if caller.is_internal:
        logger.debug("Creating an internal attachment")
        try:
            internal = InternalAttachmentCreate.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Invalid body for internal attachment creation: {e}")
            raise BadRequestError(
                "Invalid body for internal attachment creation",
                detail="Invalid body for internal attachment creation",
            ) from e
        return await attachment_service.create_internal_attachment(
            internal.integrity_hash, internal.owner_address
        )

    content = json.dumps(body, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )
    _check_size(len(content), max_upload_size)
    return await attachment_service.create_attachment(content, JSON_FILENAME)


@attachments_api_router.get(
    "/{id_or_hash}",
    summary="Get attachment",
    description=(
        "Download an attachment by ID or integrity hash. JSON uploads are "
        "returned as JSON when the Accept header prefers it."
    ),
    response_model=None,
    responses={
        200: {
            "content": {
                "application/json": {},
                OCTET_STREAM: {"schema": {"type": "string", "format": "binary"}},
            }
        }
    },
)
async def get_attachment(
    id_or_hash: str,
    request: Request,
    caller: Annotated[
        CallerIdentity, Depends(require_caller(OAUTH2, INTERNAL, EXTERNAL))
    ],
    attachment_service: Annotated[AttachmentService, Depends(get_attachment_service)],
) -> Response:
    negotiated = await attachment_service.get_attachment(
        id_or_hash, caller, request.headers.get("accept")
    )
    if negotiated.kind == "json":
        return JSONResponse(content=negotiated.value)
    return Response(
        content=negotiated.content,
        media_type=OCTET_STREAM,
        headers=octet_headers(negotiated.filename),
    )


@attachments_api_router.delete(
    "/{attachment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete attachment",
    description="Delete an attachment record. Stored content is kept.",
)
async def delete_attachment(
    attachment_id: str,
    caller: Annotated[CallerIdentity, Depends(require_caller(INTERNAL))],
    attachment_service: Annotated[AttachmentService, Depends(get_attachment_service)],
) -> Response:
    await attachment_service.delete_attachment(attachment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
