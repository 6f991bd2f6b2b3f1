from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Iterable

from pydantic import BaseModel

from filestore.core.exceptions import StorageNotInitializedError


class StorageBackend(ABC):
    """Capability contract every storage mode implements.

    Names passed to ``batch_delete``, ``move`` and ``exists`` are virtual
    names: the group path followed by the file name (``/img/a.png``).
    Batch operations are best effort and report only the names that were
    actually handled; failures of single items are logged, not raised.
    """

    @abstractmethod
    def upload(self, stream: BinaryIO, group_path: str, file_name: str) -> bool:
        """Write exactly one object, creating missing intermediate paths.

        Raises ``StorageBackendError`` when the object could not be written.
        """

    @abstractmethod
    def batch_delete(self, names: Iterable[str]) -> list[str]:
        """Remove the given names and return the subset actually deleted."""

    @abstractmethod
    def move(self, old_names: Iterable[str], new_group_path: str) -> list[str]:
        """Relocate each name into ``new_group_path`` and return the old names moved."""

    @abstractmethod
    def exists(self, name: str) -> bool:
        """Existence probe; transient errors count as "not exists"."""

    @abstractmethod
    def url_for(self, file_name: str, group_path: str | None = None) -> str:
        """Display URL of a stored file. Never touches the network."""


class ConfigurableStorageBackend(StorageBackend):
    """Backend whose client is built from a stored configuration.

    The client and the config it was built from are swapped together under
    one lock, so readers never observe a client paired with another config.
    """

    config_model: type[BaseModel]

    def __init__(self) -> None:
        self._client: Any = None
        self._config: BaseModel | None = None
        self._lock = threading.Lock()

    @abstractmethod
    def _build_client(self, config: BaseModel) -> Any:
        """Create a client for ``config``."""

    @property
    def config(self) -> BaseModel | None:
        with self._lock:
            return self._config

    def get_or_init(self, config: BaseModel | None = None):
        """Return the backend, rebuilding its client when ``config`` is given."""
        with self._lock:
            if config is None:
                if self._client is None:
                    raise StorageNotInitializedError(
                        f"{type(self).__name__} is not initialized and no config was supplied"
                    )
                return self
            self._client = self._build_client(config)
            self._config = config
            return self

    def ensure(self, config: BaseModel) -> bool:
        """Build the client for ``config`` unless it is already current.

        The comparison and the rebuild share one lock hold, so concurrent
        first callers build a single client. Returns whether a build happened.
        """
        with self._lock:
            if self._client is not None and self._config == config:
                return False
            self._client = self._build_client(config)
            self._config = config
            return True

    def reset(self) -> None:
        with self._lock:
            self._client = None
            self._config = None

    def _session(self) -> tuple[Any, Any]:
        """Snapshot the current client/config pair."""
        with self._lock:
            if self._client is None:
                raise StorageNotInitializedError(f"{type(self).__name__} is not initialized")
            return self._client, self._config
