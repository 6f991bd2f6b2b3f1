from __future__ import annotations

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, File, Form, HTTPException, Query, Request, UploadFile
from sqlmodel import Session

from filestore.config import MAX_FILE_SIZE
from filestore.core.metrics import metrics
from filestore.db import get_session
from filestore.models import (
    FileDeleteRequest,
    FileGroupAddRequest,
    FileGroupResponse,
    FileGroupUpdateRequest,
    FileIndex,
    FileMoveRequest,
    FileRecordRequest,
    FileSort,
    StorageMode,
)
from filestore.repository import FileIndexStore
from filestore.services.file_service import FileService
from filestore.services.stats import fetch_storage_totals

router = APIRouter(prefix="/api/files")

logger = logging.getLogger("filestore")

MAX_FILE_SIZE_MB = MAX_FILE_SIZE / (1024 * 1024)


def get_file_service(request: Request, session: Session = Depends(get_session)) -> FileService:
    return FileService(FileIndexStore(session), request.app.state.storage_backends)


def _public_config(config) -> dict[str, Any]:
    return config.model_dump(by_alias=True, exclude={"secret_key"})


@router.get("/modes")
def list_modes(service: FileService = Depends(get_file_service)):
    return {"modes": [mode.value for mode in service.available_modes()]}


@router.post("/modes/{mode}")
def configure_mode(
    mode: StorageMode,
    config: dict[str, Any] = Body(...),
    service: FileService = Depends(get_file_service),
):
    parsed = service.set_mode_config(mode, config)
    return {"storageMode": mode.value, "config": _public_config(parsed)}


@router.get("/modes/{mode}")
def read_mode(mode: StorageMode, service: FileService = Depends(get_file_service)):
    config = service.get_mode_config(mode)
    if config is None:
        raise HTTPException(status_code=404, detail=f"Storage mode [{mode.value}] is not configured")
    return {"storageMode": mode.value, "config": _public_config(config)}


@router.delete("/modes/{mode}")
def remove_mode(mode: StorageMode, service: FileService = Depends(get_file_service)):
    return {"storageMode": mode.value, "removed": service.delete_mode_config(mode)}


@router.post("")
def upload(
    file: UploadFile = File(...),
    storage_mode: StorageMode = Form(StorageMode.LOCAL, alias="storageMode"),
    file_group_id: Optional[int] = Form(None, alias="fileGroupId"),
    service: FileService = Depends(get_file_service),
):
    if file.size is not None and file.size > MAX_FILE_SIZE:
        logger.warning(
            "event=upload_rejected reason=max_size filename=%s size_bytes=%s limit_bytes=%s",
            file.filename,
            file.size,
            MAX_FILE_SIZE,
        )
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum allowed size is {MAX_FILE_SIZE_MB:.1f} MB.",
        )

    return service.upload(file.file, file.filename, storage_mode, file_group_id, file.size)


@router.post("/record")
def record_file(request: FileRecordRequest, service: FileService = Depends(get_file_service)):
    return service.record_existing_file(request)


@router.delete("")
def delete_files(request: FileDeleteRequest, service: FileService = Depends(get_file_service)):
    deleted = service.delete_files(request.file_ids)
    logger.info("event=delete_request requested=%d deleted=%d", len(request.file_ids), len(deleted))
    return {"deleted": deleted}


@router.delete("/name")
def delete_by_indexes(indexes: List[FileIndex], service: FileService = Depends(get_file_service)):
    return service.delete_by_indexes(indexes)


@router.put("")
def move_files(request: FileMoveRequest, service: FileService = Depends(get_file_service)):
    return {"moved": service.move(request)}


@router.get("")
def list_files(
    page: int = Query(1, ge=0),
    size: int = Query(20, ge=1, le=500),
    sort: FileSort = FileSort.CREATE_TIME_DESC,
    storage_mode: Optional[StorageMode] = Query(None, alias="storageMode"),
    file_group_id: Optional[int] = Query(None, alias="fileGroupId"),
    key: Optional[str] = None,
    service: FileService = Depends(get_file_service),
):
    return service.list_files(page, size, sort, storage_mode, file_group_id, key)


@router.post("/group")
def add_group(request: FileGroupAddRequest, service: FileService = Depends(get_file_service)):
    return FileGroupResponse.model_validate(service.add_group(request))


@router.put("/group")
def update_group(request: FileGroupUpdateRequest, service: FileService = Depends(get_file_service)):
    return FileGroupResponse.model_validate(service.update_group(request))


@router.delete("/group/{group_id}")
def delete_group(group_id: int, service: FileService = Depends(get_file_service)):
    return {"fileGroupId": group_id, "removed": service.delete_group(group_id)}


@router.get("/group")
def list_groups(
    storage_mode: Optional[StorageMode] = Query(None, alias="storageMode"),
    service: FileService = Depends(get_file_service),
):
    return [FileGroupResponse.model_validate(group) for group in service.list_groups(storage_mode)]


@router.get("/group/{group_id}")
def read_group(group_id: int, service: FileService = Depends(get_file_service)):
    return FileGroupResponse.model_validate(service.get_group(group_id))


@router.get("/metrics")
def read_metrics(session: Session = Depends(get_session)):
    totals = fetch_storage_totals(session)
    snapshot = metrics.snapshot()
    return {**snapshot, **totals}
