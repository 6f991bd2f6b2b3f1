from __future__ import annotations

import logging
import posixpath
from typing import Any, BinaryIO, Callable, Iterable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from filestore.backends.base import ConfigurableStorageBackend
from filestore.backends.paths import format_slash, join_path
from filestore.config import (
    REMOTE_CONNECT_TIMEOUT_SECONDS,
    REMOTE_MAX_ATTEMPTS,
    REMOTE_READ_TIMEOUT_SECONDS,
)
from filestore.core.exceptions import StorageBackendError

logger = logging.getLogger("filestore.backends.object_storage")

# DeleteObjects accepts at most 1000 keys per request
MAX_DELETE_KEYS = 1000
_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStorageConfig(BaseModel):
    """Credentials and location of a bucket, stored as a camelCase JSON blob."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    secret_id: str = Field(min_length=1)
    secret_key: str = Field(min_length=1)
    region: str = Field(min_length=1)
    bucket: str = Field(min_length=1)
    path: Optional[str] = None
    https: bool = False
    endpoint: Optional[str] = None

    @property
    def scheme(self) -> str:
        return "https" if self.https else "http"

    @property
    def host(self) -> str:
        return f"{self.bucket}.cos.{self.region}.myqcloud.com"


def build_s3_client(config: ObjectStorageConfig):
    endpoint = config.endpoint or f"{config.scheme}://cos.{config.region}.myqcloud.com"
    return boto3.client(
        "s3",
        region_name=config.region,
        endpoint_url=endpoint,
        aws_access_key_id=config.secret_id,
        aws_secret_access_key=config.secret_key,
        config=BotoConfig(
            connect_timeout=REMOTE_CONNECT_TIMEOUT_SECONDS,
            read_timeout=REMOTE_READ_TIMEOUT_SECONDS,
            retries={"max_attempts": REMOTE_MAX_ATTEMPTS, "mode": "standard"},
            s3={"addressing_style": "virtual"},
        ),
    )


def object_key(config: ObjectStorageConfig, sub_path: str) -> str:
    """Bucket key for ``sub_path`` below the configured base path."""
    return format_slash(f"{config.path or ''}/{sub_path}").lstrip("/")


def object_storage_url(config: ObjectStorageConfig, file_name: str, group_path: Optional[str] = None) -> str:
    return f"{config.scheme}://" + format_slash(
        f"{config.host}/{config.path or ''}/{group_path or ''}/{file_name}"
    )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ObjectStorageBackend(ConfigurableStorageBackend):
    """S3-compatible bucket backend (Tencent COS by default)."""

    config_model = ObjectStorageConfig

    def __init__(self, client_factory: Callable[[ObjectStorageConfig], Any] = build_s3_client):
        super().__init__()
        self._client_factory = client_factory

    def _build_client(self, config: ObjectStorageConfig):
        try:
            return self._client_factory(config)
        except (BotoCoreError, ValueError) as exc:
            raise StorageBackendError(f"Unable to create object storage client: {exc}") from exc

    def upload(self, stream: BinaryIO, group_path: str, file_name: str) -> bool:
        client, config = self._session()
        key = object_key(config, join_path(group_path, file_name))
        try:
            client.put_object(Bucket=config.bucket, Key=key, Body=stream)
        except (ClientError, BotoCoreError) as exc:
            raise StorageBackendError(f"Unable to upload object {key}: {exc}") from exc
        logger.info("event=remote_upload bucket=%s key=%s", config.bucket, key)
        return True

    def batch_delete(self, names: Iterable[str]) -> list[str]:
        client, config = self._session()
        names_by_key: dict[str, list[str]] = {}
        for name in names:
            names_by_key.setdefault(object_key(config, name), []).append(name)
        if not names_by_key:
            return []

        keys = list(names_by_key)
        deleted: list[str] = []
        failed_chunks = 0
        chunks = [keys[i : i + MAX_DELETE_KEYS] for i in range(0, len(keys), MAX_DELETE_KEYS)]
        for chunk in chunks:
            try:
                response = client.delete_objects(
                    Bucket=config.bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": False},
                )
            except (ClientError, BotoCoreError) as exc:
                failed_chunks += 1
                logger.error(
                    "event=remote_delete_failure bucket=%s keys=%d error=%s", config.bucket, len(chunk), exc
                )
                continue
            for item in response.get("Deleted", []):
                deleted.extend(names_by_key.get(item.get("Key"), []))
            for item in response.get("Errors", []):
                logger.warning(
                    "event=remote_delete_item_failure key=%s code=%s message=%s",
                    item.get("Key"),
                    item.get("Code"),
                    item.get("Message"),
                )

        if failed_chunks == len(chunks):
            raise StorageBackendError(f"Unable to delete objects from bucket {config.bucket}")
        return deleted

    def move(self, old_names: Iterable[str], new_group_path: str) -> list[str]:
        client, config = self._session()
        moved: list[str] = []
        copied: list[str] = []
        for name in old_names:
            source_key = object_key(config, name)
            target_key = object_key(config, join_path(new_group_path, posixpath.basename(name)))
            if source_key == target_key:
                moved.append(name)
                continue
            try:
                client.copy_object(
                    Bucket=config.bucket,
                    Key=target_key,
                    CopySource={"Bucket": config.bucket, "Key": source_key},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.error("event=remote_copy_failure source=%s target=%s error=%s", source_key, target_key, exc)
                continue
            copied.append(name)

        if copied:
            try:
                removed = set(self.batch_delete(copied))
            except StorageBackendError:
                removed = set()
            for name in copied:
                if name not in removed:
                    logger.warning("event=remote_move_orphan bucket=%s name=%s", config.bucket, name)
        moved.extend(copied)
        logger.info("event=remote_move target=%s moved=%d", new_group_path, len(moved))
        return moved

    def exists(self, name: str) -> bool:
        client, config = self._session()
        key = object_key(config, name)
        try:
            client.head_object(Bucket=config.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) not in _NOT_FOUND_CODES:
                logger.warning("event=remote_exists_failure key=%s error=%s", key, exc)
            return False
        except BotoCoreError as exc:
            logger.warning("event=remote_exists_failure key=%s error=%s", key, exc)
            return False
        return True

    def url_for(self, file_name: str, group_path: Optional[str] = None) -> str:
        _, config = self._session()
        return object_storage_url(config, file_name, group_path)
