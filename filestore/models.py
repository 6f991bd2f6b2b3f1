import time
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class StorageMode(str, Enum):
    LOCAL = "LOCAL"
    REMOTE_OBJECT = "REMOTE_OBJECT"


class FileSort(str, Enum):
    CREATE_TIME_DESC = "CREATE_TIME_DESC"
    CREATE_TIME_ASC = "CREATE_TIME_ASC"
    SIZE_DESC = "SIZE_DESC"
    SIZE_ASC = "SIZE_ASC"


def _now_millis() -> int:
    return int(time.time() * 1000)


class FileGroup(SQLModel, table=True):
    """Virtual folder scoped to one storage mode. Mode and path never change."""

    __tablename__ = "file_group"
    __table_args__ = (
        UniqueConstraint("storage_mode", "display_name", name="uq_file_group_mode_name"),
        UniqueConstraint("storage_mode", "path", name="uq_file_group_mode_path"),
    )

    file_group_id: Optional[int] = Field(default=None, primary_key=True)
    display_name: str = Field(max_length=128)
    path: str = Field(max_length=128)
    storage_mode: StorageMode


class File(SQLModel, table=True):
    __tablename__ = "file"

    file_id: Optional[int] = Field(default=None, primary_key=True)
    file_group_id: Optional[int] = Field(
        default=None, foreign_key="file_group.file_group_id", nullable=True, index=True
    )
    display_name: str = Field(max_length=512, index=True)
    size: int = Field(default=0)
    storage_mode: StorageMode = Field(index=True)
    create_time: int = Field(default_factory=_now_millis)  # epoch milliseconds


class FileStorageModeConfig(SQLModel, table=True):
    """Serialized backend configuration, one row per configured remote mode."""

    __tablename__ = "file_storage_mode"

    file_storage_mode_id: Optional[int] = Field(default=None, primary_key=True)
    storage_mode: StorageMode = Field(unique=True)
    config: str = Field(sa_column=Column(Text, nullable=False))


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileIndex(CamelModel):
    """Unit of work for delete; ``name`` is the group path plus the display name."""

    file_id: Optional[int] = None
    name: str
    storage_mode: StorageMode


class FileWithGroup(CamelModel):
    file_id: int
    file_group_id: Optional[int] = None
    file_name: str
    file_group_name: Optional[str] = None
    file_group_path: Optional[str] = None
    size: int
    storage_mode: StorageMode
    create_time: int

    @property
    def virtual_name(self) -> str:
        return f"{self.file_group_path or ''}/{self.file_name}"


class FileResponse(CamelModel):
    file_id: Optional[int] = None
    file_group_id: Optional[int] = None
    file_group_name: Optional[str] = None
    display_name: str
    url: str
    size: int
    storage_mode: StorageMode
    create_time: int


T = TypeVar("T")


class Pager(CamelModel, Generic[T]):
    page: int
    size: int
    data: List[T]
    total_data: int
    total_pages: int


class FileGroupAddRequest(CamelModel):
    display_name: str
    path: str
    storage_mode: StorageMode


class FileGroupUpdateRequest(CamelModel):
    file_group_id: int
    display_name: str


class FileMoveRequest(CamelModel):
    file_ids: List[int]
    new_file_group_id: Optional[int] = None


class FileRecordRequest(CamelModel):
    name: str
    size: int
    storage_mode: Optional[StorageMode] = None
    file_group_id: Optional[int] = None


class FileDeleteRequest(CamelModel):
    file_ids: List[int]


class FileGroupResponse(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    file_group_id: int
    display_name: str
    path: str
    storage_mode: StorageMode
