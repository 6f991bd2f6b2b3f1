from __future__ import annotations

import logging
import math
import posixpath
from typing import Any, BinaryIO, Iterable, Mapping, Optional

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from filestore.backends.base import ConfigurableStorageBackend, StorageBackend
from filestore.backends.local import LocalStorageBackend
from filestore.backends.object_storage import ObjectStorageBackend
from filestore.backends.paths import (
    add_random_suffix,
    format_slash,
    normalize_group_path,
    split_virtual_name,
    strip_collision_suffix,
    virtual_name,
)
from filestore.config import DEFAULT_FILE_NAME
from filestore.core.exceptions import (
    DuplicateFileError,
    DuplicateFileGroupError,
    FileGroupNotEmptyError,
    FileGroupNotFoundError,
    FileStorageNotConfiguredError,
    FileUploadError,
    InvalidFileGroupError,
    MixedStorageModeError,
    StorageBackendError,
    StorageConfigError,
    StorageModeInUseError,
)
from filestore.core.metrics import metrics
from filestore.models import (
    File,
    FileGroup,
    FileGroupAddRequest,
    FileGroupUpdateRequest,
    FileIndex,
    FileMoveRequest,
    FileRecordRequest,
    FileResponse,
    FileSort,
    FileWithGroup,
    Pager,
    StorageMode,
)
from filestore.repository import FileIndexStore, with_group

logger = logging.getLogger("filestore.services.file_service")


def default_backends() -> dict[StorageMode, StorageBackend]:
    return {
        StorageMode.LOCAL: LocalStorageBackend(),
        StorageMode.REMOTE_OBJECT: ObjectStorageBackend(),
    }


def _clean_file_name(file_name: Optional[str]) -> str:
    name = posixpath.basename(format_slash((file_name or "").strip()))
    return name or DEFAULT_FILE_NAME


def _stream_position(stream: BinaryIO) -> int:
    try:
        return int(stream.tell())
    except (AttributeError, OSError, ValueError):
        return 0


class FileService:
    """Coordinates the file index with the storage backend of each mode.

    Backends are looked up in ``backends`` by storage mode. A backend that
    needs credentials (``ConfigurableStorageBackend``) is usable only once a
    config row exists for its mode; ``ensure_backend`` keeps the backend's
    client in step with that row.
    """

    def __init__(self, store: FileIndexStore, backends: Mapping[StorageMode, StorageBackend]):
        if StorageMode.LOCAL not in backends:
            raise ValueError("A LOCAL storage backend is required")
        self.store = store
        self.backends = dict(backends)

    # Storage modes

    def _backend(self, mode: StorageMode) -> StorageBackend:
        backend = self.backends.get(mode)
        if backend is None:
            raise FileStorageNotConfiguredError(mode)
        return backend

    def _configurable(self, mode: StorageMode) -> ConfigurableStorageBackend:
        backend = self._backend(mode)
        if not isinstance(backend, ConfigurableStorageBackend):
            raise StorageConfigError(f"Storage mode [{mode.value}] does not take a configuration")
        return backend

    @staticmethod
    def _parse_config(backend: ConfigurableStorageBackend, raw: Any) -> BaseModel:
        if isinstance(raw, backend.config_model):
            return raw
        try:
            if isinstance(raw, (str, bytes)):
                return backend.config_model.model_validate_json(raw)
            return backend.config_model.model_validate(raw)
        except ValidationError as exc:
            raise StorageConfigError(f"Invalid storage configuration: {exc}") from exc

    def available_modes(self) -> list[StorageMode]:
        modes = [StorageMode.LOCAL]
        for mode in self.store.list_configured_modes():
            if mode in self.backends and mode not in modes:
                modes.append(mode)
        return modes

    def is_mode_configured(self, mode: StorageMode) -> bool:
        backend = self.backends.get(mode)
        if backend is None:
            return False
        if not isinstance(backend, ConfigurableStorageBackend):
            return True
        return self.store.get_mode_config(mode) is not None

    def ensure_backend(self, mode: StorageMode) -> StorageBackend:
        """Return the backend of ``mode``, initialised from its stored config."""
        backend = self._backend(mode)
        if not isinstance(backend, ConfigurableStorageBackend):
            return backend

        row = self.store.get_mode_config(mode)
        if row is None:
            raise FileStorageNotConfiguredError(mode)
        config = self._parse_config(backend, row.config)
        if backend.ensure(config):
            logger.info("event=backend_init mode=%s", mode.value)
        return backend

    def set_mode_config(self, mode: StorageMode, config: Any) -> BaseModel:
        backend = self._configurable(mode)
        parsed = self._parse_config(backend, config)
        # A config the client cannot be built from is never stored
        backend.get_or_init(parsed)
        self.store.set_mode_config(mode, parsed.model_dump_json(by_alias=True))
        logger.info("event=mode_configured mode=%s", mode.value)
        return parsed

    def get_mode_config(self, mode: StorageMode) -> Optional[BaseModel]:
        backend = self._configurable(mode)
        row = self.store.get_mode_config(mode)
        if row is None:
            return None
        return self._parse_config(backend, row.config)

    def delete_mode_config(self, mode: StorageMode) -> bool:
        backend = self._configurable(mode)
        count = self.store.count_files_by_mode(mode)
        if count > 0:
            raise StorageModeInUseError(mode, count)
        removed = self.store.delete_mode_config(mode)
        backend.reset()
        logger.info("event=mode_removed mode=%s removed=%s", mode.value, removed)
        return removed

    # File groups

    def _resolve_group(self, group_id: Optional[int], mode: StorageMode) -> Optional[FileGroup]:
        if group_id is None or group_id <= 0:
            return None
        group = self.store.get_group(group_id)
        if group is None or group.storage_mode != mode:
            raise FileGroupNotFoundError(group_id)
        return group

    def add_group(self, request: FileGroupAddRequest) -> FileGroup:
        mode = request.storage_mode
        if not self.is_mode_configured(mode):
            raise FileStorageNotConfiguredError(mode)

        name = request.display_name.strip()
        if not name:
            raise InvalidFileGroupError("File group name must not be blank")
        path = normalize_group_path(request.path)
        if path == "/":
            raise InvalidFileGroupError("File group path must not be the storage root")

        if self.store.get_group_by_name(mode, name) is not None:
            raise DuplicateFileGroupError("name", name)
        if self.store.get_group_by_path(mode, path) is not None:
            raise DuplicateFileGroupError("path", path)

        group = self.store.add_group(FileGroup(display_name=name, path=path, storage_mode=mode))
        logger.info("event=group_added id=%s mode=%s path=%s", group.file_group_id, mode.value, path)
        return group

    def update_group(self, request: FileGroupUpdateRequest) -> FileGroup:
        group = self.store.get_group(request.file_group_id)
        if group is None:
            raise FileGroupNotFoundError(request.file_group_id)

        name = request.display_name.strip()
        if not name:
            raise InvalidFileGroupError("File group name must not be blank")
        other = self.store.get_group_by_name(group.storage_mode, name)
        if other is not None and other.file_group_id != group.file_group_id:
            raise DuplicateFileGroupError("name", name)

        return self.store.update_group_name(group.file_group_id, name)

    def delete_group(self, group_id: int) -> bool:
        count = self.store.count_files_by_group(group_id)
        if count > 0:
            raise FileGroupNotEmptyError(group_id, count)
        removed = self.store.delete_group(group_id)
        if removed:
            logger.info("event=group_deleted id=%s", group_id)
        return removed

    def get_group(self, group_id: int) -> FileGroup:
        group = self.store.get_group(group_id)
        if group is None:
            raise FileGroupNotFoundError(group_id)
        return group

    def list_groups(self, mode: Optional[StorageMode] = None) -> list[FileGroup]:
        return self.store.list_groups(mode)

    # Files

    def _response(self, row: FileWithGroup, backend: StorageBackend) -> FileResponse:
        return FileResponse(
            file_id=row.file_id,
            file_group_id=row.file_group_id,
            file_group_name=row.file_group_name,
            display_name=row.file_name,
            url=backend.url_for(row.file_name, row.file_group_path),
            size=row.size,
            storage_mode=row.storage_mode,
            create_time=row.create_time,
        )

    def upload(
        self,
        stream: BinaryIO,
        file_name: Optional[str],
        mode: StorageMode = StorageMode.LOCAL,
        group_id: Optional[int] = None,
        size: Optional[int] = None,
    ) -> FileResponse:
        """Store ``stream`` on the backend of ``mode`` and index it.

        A name already taken in the target group gets a random ``_xxxxx``
        suffix. The collision check and the insert are separate steps, so two
        concurrent uploads of the same name may still end up sharing it.
        """
        name = _clean_file_name(file_name)
        group = self._resolve_group(group_id, mode)
        backend = self.ensure_backend(mode)
        target_group_id = group.file_group_id if group else None
        group_path = group.path if group else ""

        if self.store.get_file(name, target_group_id, mode) is not None:
            # Only a suffix left by an earlier rename of the same name is replaced
            original = strip_collision_suffix(name)
            replace = original != name and self.store.get_file(original, target_group_id, mode) is not None
            renamed = add_random_suffix(name, replace_existing=replace)
            logger.info("event=upload_rename mode=%s from=%s to=%s", mode.value, name, renamed)
            name = renamed

        try:
            backend.upload(stream, group_path, name)
        except StorageBackendError as exc:
            logger.error("event=upload_failure mode=%s name=%s error=%s", mode.value, name, exc.message)
            raise FileUploadError(name, exc.message) from exc

        if size is None:
            size = _stream_position(stream)
        try:
            file = self.store.add_file(
                File(display_name=name, file_group_id=target_group_id, size=size, storage_mode=mode)
            )
        except SQLAlchemyError:
            logger.error(
                "event=upload_orphan mode=%s name=%s reason=index_write_failed",
                mode.value,
                virtual_name(group_path, name),
            )
            raise

        metrics.record_upload(size)
        logger.info(
            "event=upload_success file_id=%s mode=%s name=%s size=%s",
            file.file_id,
            mode.value,
            name,
            size,
        )
        return self._response(with_group(file, group), backend)

    def record_existing_file(self, request: FileRecordRequest) -> FileResponse:
        """Index a file that was already placed on the backend out of band."""
        mode = request.storage_mode or StorageMode.LOCAL
        name = _clean_file_name(request.name)
        group = self._resolve_group(request.file_group_id, mode)
        backend = self.ensure_backend(mode)
        target_group_id = group.file_group_id if group else None

        if self.store.get_file(name, target_group_id, mode) is not None:
            raise DuplicateFileError(virtual_name(group.path if group else None, name))

        file = self.store.add_file(
            File(display_name=name, file_group_id=target_group_id, size=request.size, storage_mode=mode)
        )
        logger.info("event=file_recorded file_id=%s mode=%s name=%s", file.file_id, mode.value, name)
        return self._response(with_group(file, group), backend)

    def delete_by_indexes(self, indexes: Iterable[FileIndex]) -> list[FileIndex]:
        """Delete files from their backends, then drop the confirmed rows.

        Only names the backend reports as deleted are removed from the index.
        Returns the indexes that were both deleted and unindexed.
        """
        by_mode: dict[StorageMode, list[FileIndex]] = {}
        for index in indexes:
            by_mode.setdefault(index.storage_mode, []).append(index)
        if not by_mode:
            return []

        # Configuration problems surface before any backend I/O
        backends = {mode: self.ensure_backend(mode) for mode in by_mode}

        result: list[FileIndex] = []
        for mode, items in by_mode.items():
            by_name: dict[str, list[FileIndex]] = {}
            for index in items:
                by_name.setdefault(format_slash(index.name), []).append(index)

            try:
                confirmed = backends[mode].batch_delete(list(by_name))
            except StorageBackendError as exc:
                logger.error("event=delete_failure mode=%s count=%d error=%s", mode.value, len(items), exc.message)
                continue

            result.extend(self._reconcile_deletions(mode, confirmed, by_name))

        metrics.record_deletions(len(result))
        return result

    def _reconcile_deletions(
        self, mode: StorageMode, confirmed: Iterable[str], by_name: Mapping[str, list[FileIndex]]
    ) -> list[FileIndex]:
        split = {name: split_virtual_name(name) for name in dict.fromkeys(confirmed) if name in by_name}
        groups = self.store.get_groups_by_paths(
            mode, [path for path, _ in split.values() if path is not None]
        )

        keys: dict[str, tuple[Optional[int], str]] = {}
        for name, (path, base) in split.items():
            if path is None:
                keys[name] = (None, base)
            elif path in groups:
                keys[name] = (groups[path].file_group_id, base)
            else:
                logger.warning("event=delete_unindexed mode=%s name=%s reason=unknown_group", mode.value, name)

        removed = self.store.delete_files_by_group_and_name(mode, keys.values())
        reconciled: list[FileIndex] = []
        for name, key in keys.items():
            if key in removed:
                reconciled.append(by_name[name][0])
        logger.info(
            "event=delete_success mode=%s confirmed=%d unindexed=%d", mode.value, len(split), len(reconciled)
        )
        return reconciled

    def delete_files(self, file_ids: Iterable[int]) -> list[int]:
        rows = self.store.get_files_with_group(file_ids)
        indexes = [
            FileIndex(file_id=row.file_id, name=row.virtual_name, storage_mode=row.storage_mode) for row in rows
        ]
        return [index.file_id for index in self.delete_by_indexes(indexes)]

    def move(self, request: FileMoveRequest) -> list[str]:
        """Move files into another group of the same storage mode.

        Returns the old virtual names the backend confirmed. Only those rows
        get the new group id.
        """
        rows = self.store.get_files_with_group(request.file_ids)
        if not rows:
            return []

        modes = {row.storage_mode for row in rows}
        if len(modes) > 1:
            raise MixedStorageModeError()
        mode = modes.pop()

        target = self._resolve_group(request.new_file_group_id, mode)
        target_id = target.file_group_id if target else None
        target_path = target.path if target else ""

        pending: dict[str, FileWithGroup] = {}
        taken: set[str] = set()
        for row in rows:
            if row.file_group_id == target_id:
                continue
            if row.file_name in taken or self.store.get_file(row.file_name, target_id, mode) is not None:
                logger.warning(
                    "event=move_skipped file_id=%s name=%s reason=name_taken_in_target", row.file_id, row.file_name
                )
                continue
            taken.add(row.file_name)
            pending[format_slash(row.virtual_name)] = row
        if not pending:
            return []

        backend = self.ensure_backend(mode)
        moved = [name for name in backend.move(list(pending), target_path) if name in pending]

        try:
            self.store.update_file_groups([pending[name].file_id for name in moved], target_id)
        except SQLAlchemyError:
            logger.error("event=move_unindexed mode=%s target=%s names=%s", mode.value, target_path, moved)
            raise

        metrics.record_moves(len(moved))
        logger.info("event=move_success mode=%s target=%s moved=%d", mode.value, target_path or "/", len(moved))
        return moved

    def list_files(
        self,
        page: int = 1,
        size: int = 20,
        sort: FileSort = FileSort.CREATE_TIME_DESC,
        mode: Optional[StorageMode] = None,
        group_id: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Pager[FileResponse]:
        rows, total = self.store.page_files_with_group(page, size, sort, mode, group_id, key)

        backends: dict[StorageMode, StorageBackend] = {}
        data = []
        for row in rows:
            if row.storage_mode not in backends:
                backends[row.storage_mode] = self.ensure_backend(row.storage_mode)
            data.append(self._response(row, backends[row.storage_mode]))

        if page > 0:
            total_pages = math.ceil(total / size) if size > 0 else 0
        else:
            size, total_pages = total, 1 if total else 0
        return Pager[FileResponse](page=page, size=size, data=data, total_data=total, total_pages=total_pages)

    def file_count(self) -> int:
        return self.store.count_files()
