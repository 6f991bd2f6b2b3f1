from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class FileStoreError(Exception):
    """Base class for file storage domain errors."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# Configuration errors


class FileStorageNotConfiguredError(FileStoreError):
    """Raised when a storage mode is used before its configuration is stored."""

    def __init__(self, mode) -> None:
        self.mode = mode
        super().__init__(f"File storage mode [{_mode_name(mode)}] is not configured")


class StorageConfigError(FileStoreError):
    """Raised when a stored or submitted backend configuration cannot be used."""


class StorageNotInitializedError(FileStoreError):
    """Raised when a remote backend is used before any configuration was applied."""

    status_code = 500


# Validation errors


class FileGroupNotFoundError(FileStoreError):
    status_code = 404

    def __init__(self, group_id) -> None:
        self.group_id = group_id
        super().__init__(f"File group [{group_id}] does not exist")


class InvalidFileGroupError(FileStoreError):
    pass


class DuplicateFileGroupError(FileStoreError):
    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"File group {field} [{value}] already exists")


class DuplicateFileError(FileStoreError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"File name [{name}] already exists")


class FileGroupNotEmptyError(FileStoreError):
    def __init__(self, group_id, count: int) -> None:
        self.group_id = group_id
        self.count = count
        super().__init__(f"File group still contains {count} file(s) and cannot be deleted")


class StorageModeInUseError(FileStoreError):
    def __init__(self, mode, count: int) -> None:
        self.mode = mode
        self.count = count
        super().__init__(
            f"Storage mode [{_mode_name(mode)}] still holds {count} file(s) and cannot be removed"
        )


class MixedStorageModeError(FileStoreError):
    def __init__(self) -> None:
        super().__init__("Files to move must all belong to the same storage mode")


# Backend I/O errors


class StorageBackendError(FileStoreError):
    """A backend call failed as a whole (per-item failures are only logged)."""

    status_code = 502


class FileUploadError(StorageBackendError):
    def __init__(self, name: str, reason: str | None = None) -> None:
        self.name = name
        detail = f"Failed to upload file [{name}]"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


def _mode_name(mode) -> str:
    return getattr(mode, "value", mode)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(FileStoreError)
    async def file_store_error_handler(request: Request, exc: FileStoreError):
        return JSONResponse({"detail": exc.message}, status_code=exc.status_code)
