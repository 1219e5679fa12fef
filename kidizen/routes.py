"""
HTTP routes for the Kidizen Science API.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, File, Header, Query, Request, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from kidizen.auth import CredentialService
from kidizen.config import get_settings
from kidizen.crud import CrudService
from kidizen.dependencies import get_credential_service, get_crud_service
from kidizen.errors import INVALID_ID, ValidationFailed
from kidizen.schema import PROJECTS, Ancestor
from kidizen.schemas import (
    EntityLinkResponse,
    EntityListResponse,
    HealthResponse,
    ImageUploadResponse,
    ResetChallengeResponse,
    is_valid_id,
)

router = APIRouter()

NO_IMAGE = "No image was included in the request."


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/") + get_settings().api_prefix


def _check_ids(*ids: str) -> None:
    for value in ids:
        if not is_valid_id(value):
            raise ValidationFailed(INVALID_ID)


def _method_not_allowed(allow: str) -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "The method is not allowed on this endpoint."},
        headers={"Allow": allow},
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok")


@router.post("/images", response_model=ImageUploadResponse, status_code=201)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    """
    Store an uploaded JPEG or PNG and return its public URL.
    """
    if image is None:
        raise ValidationFailed(NO_IMAGE)
    # One byte past the limit is enough to reject an oversized upload.
    content = await image.read(crud.max_image_bytes + 1)
    url = await run_in_threadpool(
        crud.upload_image,
        image.filename or "image",
        content,
        image.content_type,
        authorization,
    )
    return ImageUploadResponse(public_url=url)


@router.get("/teachers")
def list_teachers():
    return _method_not_allowed("POST")


@router.get("/teachers/{teacher_id}/credentials", response_model=ResetChallengeResponse)
def get_reset_challenge(
    teacher_id: str,
    service: CredentialService = Depends(get_credential_service),
):
    _check_ids(teacher_id)
    return service.reset_challenge(teacher_id).as_dict()


@router.put("/teachers/{teacher_id}/credentials", status_code=204)
def reset_unknown_password(
    teacher_id: str,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    service: CredentialService = Depends(get_credential_service),
):
    _check_ids(teacher_id)
    service.reset_unknown_password(payload, teacher_id, authorization)
    return Response(status_code=204)


@router.patch("/teachers/{teacher_id}/credentials", status_code=204)
def update_known_password(
    teacher_id: str,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    service: CredentialService = Depends(get_credential_service),
):
    _check_ids(teacher_id)
    service.update_known_password(payload, teacher_id, authorization)
    return Response(status_code=204)


@router.api_route("/teachers/{teacher_id}/credentials", methods=["POST", "DELETE"])
def credentials_method_not_allowed(teacher_id: str):
    return _method_not_allowed("GET, PUT, PATCH")


@router.get("/teachers/{teacher_id}/projects", response_model=EntityListResponse)
def list_projects_of_teacher(
    teacher_id: str,
    request: Request,
    start: Optional[str] = Query(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(teacher_id)
    return crud.list_entities(
        _base_url(request), PROJECTS, start_cursor=start, teacher_id=teacher_id
    )


@router.post("/{collection}", response_model=EntityLinkResponse, status_code=201)
def create_root(
    collection: str,
    request: Request,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    return crud.create_entity(_base_url(request), payload, collection, authorization)


@router.get("/{collection}", response_model=EntityListResponse)
def list_root(
    collection: str,
    request: Request,
    start: Optional[str] = Query(None),
    crud: CrudService = Depends(get_crud_service),
):
    return crud.list_entities(_base_url(request), collection, start_cursor=start)


@router.get("/{collection}/{entity_id}")
def get_root(
    collection: str,
    entity_id: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(entity_id)
    return crud.get_entity(_base_url(request), collection, entity_id, authorization)


@router.patch("/{collection}/{entity_id}", response_model=EntityLinkResponse)
def update_root(
    collection: str,
    entity_id: str,
    request: Request,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(entity_id)
    return crud.update_entity(_base_url(request), payload, collection, entity_id, authorization)


@router.delete("/{collection}/{entity_id}", status_code=204)
def delete_root(
    collection: str,
    entity_id: str,
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(entity_id)
    crud.delete_entity(collection, entity_id, authorization)
    return Response(status_code=204)


@router.post(
    "/{ancestor}/{ancestor_id}/{collection}",
    response_model=EntityLinkResponse,
    status_code=201,
)
def create_child(
    ancestor: str,
    ancestor_id: str,
    collection: str,
    request: Request,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(ancestor_id)
    return crud.create_entity(
        _base_url(request),
        payload,
        collection,
        authorization,
        ancestor=Ancestor(ancestor, ancestor_id),
    )


@router.get("/{ancestor}/{ancestor_id}/{collection}", response_model=EntityListResponse)
def list_children(
    ancestor: str,
    ancestor_id: str,
    collection: str,
    request: Request,
    start: Optional[str] = Query(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(ancestor_id)
    return crud.list_entities(
        _base_url(request),
        collection,
        start_cursor=start,
        ancestor=Ancestor(ancestor, ancestor_id),
    )


@router.get("/{ancestor}/{ancestor_id}/{collection}/{entity_id}")
def get_child(
    ancestor: str,
    ancestor_id: str,
    collection: str,
    entity_id: str,
    request: Request,
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(ancestor_id, entity_id)
    return crud.get_entity(
        _base_url(request),
        collection,
        entity_id,
        authorization,
        ancestor=Ancestor(ancestor, ancestor_id),
    )


@router.patch(
    "/{ancestor}/{ancestor_id}/{collection}/{entity_id}",
    response_model=EntityLinkResponse,
)
def update_child(
    ancestor: str,
    ancestor_id: str,
    collection: str,
    entity_id: str,
    request: Request,
    payload: Any = Body(None),
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(ancestor_id, entity_id)
    return crud.update_entity(
        _base_url(request),
        payload,
        collection,
        entity_id,
        authorization,
        ancestor=Ancestor(ancestor, ancestor_id),
    )


@router.delete("/{ancestor}/{ancestor_id}/{collection}/{entity_id}", status_code=204)
def delete_child(
    ancestor: str,
    ancestor_id: str,
    collection: str,
    entity_id: str,
    authorization: Optional[str] = Header(None),
    crud: CrudService = Depends(get_crud_service),
):
    _check_ids(ancestor_id, entity_id)
    crud.delete_entity(
        collection, entity_id, authorization, ancestor=Ancestor(ancestor, ancestor_id)
    )
    return Response(status_code=204)
