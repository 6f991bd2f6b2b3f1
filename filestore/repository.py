from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Sequence

from sqlalchemy import func
from sqlmodel import Session, select

from filestore.config import DELETE_BATCH_SIZE
from filestore.models import (
    File,
    FileGroup,
    FileSort,
    FileStorageModeConfig,
    FileWithGroup,
    StorageMode,
)

logger = logging.getLogger("filestore.repository")

_SORT_COLUMNS = {
    FileSort.CREATE_TIME_DESC: (File.create_time.desc(), File.file_id.desc()),
    FileSort.CREATE_TIME_ASC: (File.create_time.asc(), File.file_id.asc()),
    FileSort.SIZE_DESC: (File.size.desc(), File.file_id.desc()),
    FileSort.SIZE_ASC: (File.size.asc(), File.file_id.asc()),
}


def _chunks(items: Sequence, size: int = DELETE_BATCH_SIZE) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def with_group(file: File, group: Optional[FileGroup]) -> FileWithGroup:
    return FileWithGroup(
        file_id=file.file_id,
        file_group_id=file.file_group_id,
        file_name=file.display_name,
        file_group_name=group.display_name if group else None,
        file_group_path=group.path if group else None,
        size=file.size,
        storage_mode=file.storage_mode,
        create_time=file.create_time,
    )


class FileIndexStore:
    """Persistence for files, file groups and per-mode backend configs.

    Every write commits on success. Any error rolls the session back and
    propagates unchanged.
    """

    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            yield self.session
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # Storage mode configs

    def get_mode_config(self, mode: StorageMode) -> Optional[FileStorageModeConfig]:
        stmt = select(FileStorageModeConfig).where(FileStorageModeConfig.storage_mode == mode)
        return self.session.exec(stmt).first()

    def set_mode_config(self, mode: StorageMode, config: str) -> FileStorageModeConfig:
        with self._transaction() as session:
            row = self.get_mode_config(mode)
            if row is None:
                row = FileStorageModeConfig(storage_mode=mode, config=config)
            else:
                row.config = config
            session.add(row)
        self.session.refresh(row)
        return row

    def delete_mode_config(self, mode: StorageMode) -> bool:
        """Drop the config row of ``mode`` together with its file groups."""
        with self._transaction() as session:
            for group in self.list_groups(mode):
                session.delete(group)
            row = self.get_mode_config(mode)
            if row is None:
                return False
            session.delete(row)
        return True

    def list_configured_modes(self) -> list[StorageMode]:
        stmt = select(FileStorageModeConfig.storage_mode).order_by(FileStorageModeConfig.file_storage_mode_id)
        return list(self.session.exec(stmt).all())

    # Counters

    def count_files(self) -> int:
        return int(self.session.exec(select(func.count(File.file_id))).one() or 0)

    def count_files_by_mode(self, mode: StorageMode) -> int:
        stmt = select(func.count(File.file_id)).where(File.storage_mode == mode)
        return int(self.session.exec(stmt).one() or 0)

    def count_files_by_group(self, group_id: int) -> int:
        stmt = select(func.count(File.file_id)).where(File.file_group_id == group_id)
        return int(self.session.exec(stmt).one() or 0)

    # File groups

    def add_group(self, group: FileGroup) -> FileGroup:
        with self._transaction() as session:
            session.add(group)
        self.session.refresh(group)
        return group

    def update_group_name(self, group_id: int, display_name: str) -> Optional[FileGroup]:
        with self._transaction() as session:
            group = session.get(FileGroup, group_id)
            if group is None:
                return None
            group.display_name = display_name
            session.add(group)
        self.session.refresh(group)
        return group

    def delete_group(self, group_id: int) -> bool:
        with self._transaction() as session:
            group = session.get(FileGroup, group_id)
            if group is None:
                return False
            session.delete(group)
        return True

    def get_group(self, group_id: int) -> Optional[FileGroup]:
        return self.session.get(FileGroup, group_id)

    def get_group_by_name(self, mode: StorageMode, display_name: str) -> Optional[FileGroup]:
        stmt = select(FileGroup).where(FileGroup.storage_mode == mode, FileGroup.display_name == display_name)
        return self.session.exec(stmt).first()

    def get_group_by_path(self, mode: StorageMode, path: str) -> Optional[FileGroup]:
        stmt = select(FileGroup).where(FileGroup.storage_mode == mode, FileGroup.path == path)
        return self.session.exec(stmt).first()

    def get_groups_by_paths(self, mode: StorageMode, paths: Iterable[str]) -> dict[str, FileGroup]:
        wanted = list(dict.fromkeys(paths))
        found: dict[str, FileGroup] = {}
        for chunk in _chunks(wanted):
            stmt = select(FileGroup).where(FileGroup.storage_mode == mode, FileGroup.path.in_(chunk))
            for group in self.session.exec(stmt).all():
                found[group.path] = group
        return found

    def list_groups(self, mode: Optional[StorageMode] = None) -> list[FileGroup]:
        stmt = select(FileGroup).order_by(FileGroup.file_group_id)
        if mode is not None:
            stmt = stmt.where(FileGroup.storage_mode == mode)
        return list(self.session.exec(stmt).all())

    # Files

    def add_file(self, file: File) -> File:
        with self._transaction() as session:
            session.add(file)
        self.session.refresh(file)
        return file

    def get_file(self, display_name: str, group_id: Optional[int], mode: StorageMode) -> Optional[File]:
        """Look a file up by name; ``group_id=None`` matches ungrouped rows only."""
        stmt = select(File).where(File.display_name == display_name, File.storage_mode == mode)
        if group_id is None:
            stmt = stmt.where(File.file_group_id.is_(None))
        else:
            stmt = stmt.where(File.file_group_id == group_id)
        return self.session.exec(stmt).first()

    def _joined(self):
        return select(File, FileGroup).outerjoin(FileGroup, File.file_group_id == FileGroup.file_group_id)

    def get_files_with_group(self, file_ids: Iterable[int]) -> list[FileWithGroup]:
        ids = list(dict.fromkeys(file_ids))
        rows: list[FileWithGroup] = []
        for chunk in _chunks(ids):
            stmt = self._joined().where(File.file_id.in_(chunk)).order_by(File.file_id)
            rows.extend(with_group(file, group) for file, group in self.session.exec(stmt).all())
        return rows

    def page_files_with_group(
        self,
        page: int = 0,
        size: int = 20,
        sort: FileSort = FileSort.CREATE_TIME_DESC,
        mode: Optional[StorageMode] = None,
        group_id: Optional[int] = None,
        key: Optional[str] = None,
    ) -> tuple[list[FileWithGroup], int]:
        """Return one page of joined rows and the total match count.

        ``page`` starts at 1; ``page == 0`` returns every matching row.
        """
        filters = []
        if mode is not None:
            filters.append(File.storage_mode == mode)
        if group_id is not None:
            filters.append(File.file_group_id == group_id)
        if key:
            filters.append(File.display_name.contains(key, autoescape=True))

        total = int(self.session.exec(select(func.count(File.file_id)).where(*filters)).one() or 0)

        stmt = self._joined().where(*filters).order_by(*_SORT_COLUMNS[sort])
        if page > 0:
            stmt = stmt.offset((page - 1) * size).limit(size)
        rows = [with_group(file, group) for file, group in self.session.exec(stmt).all()]
        return rows, total

    def delete_files_by_group_and_name(
        self, mode: StorageMode, keys: Iterable[tuple[Optional[int], str]]
    ) -> set[tuple[Optional[int], str]]:
        """Delete rows matching ``(group_id, display_name)`` pairs within ``mode``.

        A ``None`` group id matches ungrouped rows only. Statements bind at
        most ``DELETE_BATCH_SIZE`` values and all of them share one
        transaction. Returns the pairs that matched at least one row.
        """
        names_by_group: dict[Optional[int], list[str]] = defaultdict(list)
        for group_id, name in keys:
            names_by_group[group_id].append(name)

        removed: set[tuple[Optional[int], str]] = set()
        with self._transaction() as session:
            for group_id, names in names_by_group.items():
                group_filter = File.file_group_id.is_(None) if group_id is None else File.file_group_id == group_id
                for chunk in _chunks(list(dict.fromkeys(names))):
                    stmt = select(File).where(
                        File.storage_mode == mode, group_filter, File.display_name.in_(chunk)
                    )
                    for row in session.exec(stmt).all():
                        removed.add((group_id, row.display_name))
                        session.delete(row)
                    session.flush()
        logger.info("event=index_delete mode=%s removed=%d", mode.value, len(removed))
        return removed

    def update_file_groups(self, file_ids: Iterable[int], group_id: Optional[int]) -> int:
        ids = list(dict.fromkeys(file_ids))
        updated = 0
        with self._transaction() as session:
            for chunk in _chunks(ids):
                for row in session.exec(select(File).where(File.file_id.in_(chunk))).all():
                    row.file_group_id = group_id
                    session.add(row)
                    updated += 1
            session.flush()
        return updated
