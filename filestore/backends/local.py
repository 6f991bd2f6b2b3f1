from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Iterable

from filestore.backends.base import StorageBackend
from filestore.backends.paths import join_path
from filestore.config import LOCAL_STORAGE_DIR, URL_STORAGE_PATH
from filestore.core.exceptions import StorageBackendError

logger = logging.getLogger("filestore.backends.local")

_COPY_CHUNK_SIZE = 1024 * 1024


class LocalStorageBackend(StorageBackend):
    """Stores files under a directory subtree, group paths map to folders."""

    def __init__(self, root: str | os.PathLike = LOCAL_STORAGE_DIR, url_prefix: str = URL_STORAGE_PATH):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.url_prefix = url_prefix

    def _resolve(self, name: str) -> Path:
        """Map a virtual name onto the root, refusing anything that escapes it."""
        path = (self.root / name.strip("/\\")).resolve()
        path.relative_to(self.root)
        return path

    def upload(self, stream: BinaryIO, group_path: str, file_name: str) -> bool:
        try:
            directory = self._resolve(group_path or "")
            target = self._resolve(join_path(group_path, file_name))
        except ValueError as exc:
            raise StorageBackendError(f"Path escapes storage root: {join_path(group_path, file_name)}") from exc

        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageBackendError(f"Unable to create directory {directory}: {exc}") from exc

        try:
            with open(target, "wb") as fh:
                shutil.copyfileobj(stream, fh, _COPY_CHUNK_SIZE)
        except OSError as exc:
            target.unlink(missing_ok=True)
            raise StorageBackendError(f"Unable to write file {target}: {exc}") from exc

        logger.info("event=local_upload path=%s", target)
        return True

    def batch_delete(self, names: Iterable[str]) -> list[str]:
        deleted = []
        for name in names:
            try:
                path = self._resolve(name)
            except ValueError:
                logger.warning("event=local_delete_rejected reason=outside_root name=%s", name)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                logger.warning("event=local_delete_missing name=%s", name)
            except OSError as exc:
                logger.error("event=local_delete_failure name=%s error=%s", name, exc)
            else:
                deleted.append(name)
        return deleted

    def move(self, old_names: Iterable[str], new_group_path: str) -> list[str]:
        try:
            target_dir = self._resolve(new_group_path or "")
        except ValueError as exc:
            raise StorageBackendError(f"Path escapes storage root: {new_group_path}") from exc
        target_dir.mkdir(parents=True, exist_ok=True)

        moved = []
        for name in old_names:
            try:
                source = self._resolve(name)
            except ValueError:
                logger.warning("event=local_move_rejected reason=outside_root name=%s", name)
                continue
            if not source.is_file():
                continue

            try:
                os.replace(source, target_dir / source.name)
            except OSError as exc:
                logger.error("event=local_move_failure name=%s target=%s error=%s", name, target_dir, exc)
                continue

            moved.append(name)
            self._prune_if_empty(source.parent)
        return moved

    def _prune_if_empty(self, directory: Path) -> None:
        if directory == self.root:
            return
        try:
            next(directory.iterdir())
        except StopIteration:
            try:
                directory.rmdir()
            except OSError as exc:
                logger.warning("event=local_prune_failure path=%s error=%s", directory, exc)
        except OSError:
            return

    def exists(self, name: str) -> bool:
        try:
            return self._resolve(name).exists()
        except (ValueError, OSError) as exc:
            logger.warning("event=local_exists_failure name=%s error=%s", name, exc)
            return False

    def url_for(self, file_name: str, group_path: str | None = None) -> str:
        return join_path(self.url_prefix, group_path, file_name)
