import posixpath
import sys
from pathlib import Path

import pytest
from sqlmodel import Session

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from filestore.backends.base import ConfigurableStorageBackend  # noqa: E402
from filestore.backends.local import LocalStorageBackend  # noqa: E402
from filestore.backends.object_storage import ObjectStorageConfig  # noqa: E402
from filestore.backends.paths import virtual_name  # noqa: E402
from filestore.core.exceptions import StorageBackendError  # noqa: E402
from filestore.db import build_engine, init_db  # noqa: E402
from filestore.models import StorageMode  # noqa: E402
from filestore.repository import FileIndexStore  # noqa: E402
from filestore.services.file_service import FileService  # noqa: E402

REMOTE_CONFIG = {
    "secretId": "AKIDtest",
    "secretKey": "secret",
    "region": "ap-guangzhou",
    "bucket": "files-1250000000",
    "path": "/base",
}


class RecordingBackend(ConfigurableStorageBackend):
    """In-memory remote backend that records calls and can refuse names."""

    config_model = ObjectStorageConfig

    def __init__(self):
        super().__init__()
        self.objects = set()
        self.calls = []
        self.refuse = set()
        self.fail_upload = False

    def _build_client(self, config):
        return object()

    def upload(self, stream, group_path, file_name):
        self.calls.append(("upload", group_path, file_name))
        if self.fail_upload:
            raise StorageBackendError("bucket unavailable")
        stream.read()
        self.objects.add(virtual_name(group_path, file_name))
        return True

    def batch_delete(self, names):
        names = list(names)
        self.calls.append(("batch_delete", names))
        deleted = [name for name in names if name in self.objects and name not in self.refuse]
        self.objects.difference_update(deleted)
        return deleted

    def move(self, old_names, new_group_path):
        old_names = list(old_names)
        self.calls.append(("move", old_names, new_group_path))
        moved = []
        for name in old_names:
            if name in self.objects and name not in self.refuse:
                self.objects.remove(name)
                self.objects.add(virtual_name(new_group_path, posixpath.basename(name)))
                moved.append(name)
        return moved

    def exists(self, name):
        return name in self.objects

    def url_for(self, file_name, group_path=None):
        _, config = self._session()
        return f"https://{config.bucket}.example.com{virtual_name(group_path, file_name)}"


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", connect_args={"check_same_thread": False})
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def store(session):
    return FileIndexStore(session)


@pytest.fixture
def local_backend(tmp_path):
    return LocalStorageBackend(tmp_path / "upload", url_prefix="/upload")


@pytest.fixture
def remote_backend():
    return RecordingBackend()


@pytest.fixture
def service(store, local_backend, remote_backend):
    return FileService(
        store,
        {StorageMode.LOCAL: local_backend, StorageMode.REMOTE_OBJECT: remote_backend},
    )


@pytest.fixture
def remote_service(service):
    service.set_mode_config(StorageMode.REMOTE_OBJECT, REMOTE_CONFIG)
    return service
