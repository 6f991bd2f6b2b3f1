import io
import re

import pytest

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
from filestore.models import (
    FileGroupAddRequest,
    FileGroupUpdateRequest,
    FileIndex,
    FileMoveRequest,
    FileRecordRequest,
    FileSort,
    StorageMode,
)

from conftest import REMOTE_CONFIG

LOCAL = StorageMode.LOCAL
REMOTE = StorageMode.REMOTE_OBJECT


def _upload(service, name, data=b"data", mode=LOCAL, group_id=None):
    return service.upload(io.BytesIO(data), name, mode, group_id)


def _group(service, name="g1", path="/img", mode=LOCAL):
    return service.add_group(FileGroupAddRequest(display_name=name, path=path, storage_mode=mode))


# Storage modes


def test_mode_registry_lifecycle(service, remote_backend):
    assert service.available_modes() == [LOCAL]
    assert service.is_mode_configured(REMOTE) is False
    assert service.get_mode_config(REMOTE) is None

    config = service.set_mode_config(REMOTE, REMOTE_CONFIG)

    assert service.available_modes() == [LOCAL, REMOTE]
    assert service.get_mode_config(REMOTE) == config
    assert remote_backend.config == config

    assert service.delete_mode_config(REMOTE) is True
    assert service.available_modes() == [LOCAL]
    assert remote_backend.config is None


def test_ensure_backend_reinitializes_from_stored_config(remote_service, remote_backend):
    remote_backend.reset()

    assert remote_service.ensure_backend(REMOTE) is remote_backend
    assert remote_backend.config.bucket == REMOTE_CONFIG["bucket"]


def test_ensure_backend_requires_config(service):
    with pytest.raises(FileStorageNotConfiguredError) as exc:
        service.ensure_backend(REMOTE)
    assert "REMOTE_OBJECT" in exc.value.message


def test_invalid_mode_config_is_rejected(service):
    with pytest.raises(StorageConfigError):
        service.set_mode_config(REMOTE, {"secretId": "id"})
    with pytest.raises(StorageConfigError):
        service.set_mode_config(LOCAL, REMOTE_CONFIG)
    assert service.available_modes() == [LOCAL]


def test_delete_mode_config_in_use(remote_service):
    _upload(remote_service, "a.png", mode=REMOTE)

    with pytest.raises(StorageModeInUseError) as exc:
        remote_service.delete_mode_config(REMOTE)
    assert exc.value.count == 1


def test_delete_mode_config_drops_its_groups(remote_service, store):
    _group(remote_service, mode=REMOTE)

    remote_service.delete_mode_config(REMOTE)

    assert store.list_groups(REMOTE) == []


# File groups


def test_add_group_normalizes_path(service):
    group = _group(service, path="img//2024/")
    assert group.path == "/img/2024"
    assert group.storage_mode == LOCAL


def test_add_group_rejects_duplicates(service):
    _group(service)

    with pytest.raises(DuplicateFileGroupError):
        _group(service, name="g1", path="/other")
    with pytest.raises(DuplicateFileGroupError):
        _group(service, name="g2", path="img")


def test_add_group_rejects_root_path(service):
    with pytest.raises(InvalidFileGroupError):
        _group(service, path="/")


def test_add_group_for_unconfigured_mode(service):
    with pytest.raises(FileStorageNotConfiguredError):
        _group(service, mode=REMOTE)


def test_update_group_renames_only(service):
    group = _group(service)
    _group(service, name="g2", path="/docs")

    renamed = service.update_group(FileGroupUpdateRequest(file_group_id=group.file_group_id, display_name="pics"))
    assert renamed.display_name == "pics"
    assert renamed.path == "/img"

    with pytest.raises(DuplicateFileGroupError):
        service.update_group(FileGroupUpdateRequest(file_group_id=group.file_group_id, display_name="g2"))
    with pytest.raises(FileGroupNotFoundError):
        service.update_group(FileGroupUpdateRequest(file_group_id=999, display_name="x"))


def test_delete_group_requires_empty_group(service):
    group = _group(service)
    uploaded = _upload(service, "a.png", group_id=group.file_group_id)

    with pytest.raises(FileGroupNotEmptyError) as exc:
        service.delete_group(group.file_group_id)
    assert "1" in exc.value.message

    assert service.delete_files([uploaded.file_id]) == [uploaded.file_id]
    assert service.delete_group(group.file_group_id) is True


# Upload


def test_upload_local_writes_file_and_index(service, local_backend):
    response = _upload(service, "a.png", b"hello")

    assert response.display_name == "a.png"
    assert response.url == "/upload/a.png"
    assert response.size == 5
    assert response.storage_mode == LOCAL
    assert (local_backend.root / "a.png").read_bytes() == b"hello"
    assert service.file_count() == 1


def test_upload_collision_gets_suffix(service):
    first = _upload(service, "a.png")
    second = _upload(service, "a.png")

    assert first.display_name == "a.png"
    assert re.fullmatch(r"a_[a-z0-9]{5}\.png", second.display_name)

    third = _upload(service, second.display_name)
    assert third.display_name != second.display_name
    assert re.fullmatch(r"a_[a-z0-9]{5}\.png", third.display_name)


def test_same_name_in_different_groups_does_not_collide(service):
    group = _group(service)
    _upload(service, "a.png")

    grouped = _upload(service, "a.png", group_id=group.file_group_id)

    assert grouped.display_name == "a.png"
    assert grouped.url == "/upload/img/a.png"
    assert grouped.file_group_name == "g1"


def test_upload_blank_name_uses_default(service):
    assert _upload(service, "  ").display_name == "unnamed"


def test_upload_unconfigured_remote_mode(service, remote_backend, store):
    with pytest.raises(FileStorageNotConfiguredError):
        _upload(service, "a.png", mode=REMOTE)

    assert store.count_files() == 0
    assert remote_backend.calls == []


def test_upload_backend_failure_writes_no_index(remote_service, remote_backend, store):
    remote_backend.fail_upload = True

    with pytest.raises(FileUploadError):
        _upload(remote_service, "a.png", mode=REMOTE)
    assert store.count_files() == 0


def test_upload_to_group_of_other_mode(remote_service):
    group = _group(remote_service, mode=REMOTE)

    with pytest.raises(FileGroupNotFoundError):
        _upload(remote_service, "a.png", mode=LOCAL, group_id=group.file_group_id)


def test_upload_remote_uses_backend_url(remote_service):
    group = _group(remote_service, mode=REMOTE)

    response = _upload(remote_service, "a.png", mode=REMOTE, group_id=group.file_group_id)

    assert response.url == f"https://{REMOTE_CONFIG['bucket']}.example.com/img/a.png"


# Record-only ingestion


def test_record_existing_file(service, local_backend):
    response = service.record_existing_file(FileRecordRequest(name="placed.bin", size=42))

    assert response.size == 42
    assert response.url == "/upload/placed.bin"
    assert not (local_backend.root / "placed.bin").exists()

    with pytest.raises(DuplicateFileError):
        service.record_existing_file(FileRecordRequest(name="placed.bin", size=1))


# Delete


def test_delete_by_indexes_is_idempotent(service):
    missing = FileIndex(name="/nothing.png", storage_mode=LOCAL)

    assert service.delete_by_indexes([missing]) == []
    assert service.delete_by_indexes([]) == []


def test_delete_by_indexes_keeps_unconfirmed_rows(remote_service, remote_backend, store):
    for name in ("a.png", "b.png", "c.png"):
        _upload(remote_service, name, mode=REMOTE)
    remote_backend.refuse.add("/c.png")
    indexes = [FileIndex(name=f"/{name}", storage_mode=REMOTE) for name in ("a.png", "b.png", "c.png")]

    deleted = remote_service.delete_by_indexes(indexes)

    assert [index.name for index in deleted] == ["/a.png", "/b.png"]
    assert store.count_files_by_mode(REMOTE) == 1
    assert store.get_file("c.png", None, REMOTE) is not None


def test_delete_by_indexes_distinguishes_grouped_rows(service, store, local_backend):
    group = _group(service)
    _upload(service, "a.png")
    _upload(service, "a.png", group_id=group.file_group_id)

    deleted = service.delete_by_indexes([FileIndex(name="/img/a.png", storage_mode=LOCAL)])

    assert len(deleted) == 1
    assert store.get_file("a.png", group.file_group_id, LOCAL) is None
    assert store.get_file("a.png", None, LOCAL) is not None
    assert (local_backend.root / "a.png").exists()


def test_delete_by_indexes_skips_failing_mode(remote_service, remote_backend, store, monkeypatch):
    _upload(remote_service, "local.png")
    _upload(remote_service, "remote.png", mode=REMOTE)

    def _broken(names):
        raise StorageBackendError("bucket unavailable")

    monkeypatch.setattr(remote_backend, "batch_delete", _broken)
    deleted = remote_service.delete_by_indexes(
        [
            FileIndex(name="/local.png", storage_mode=LOCAL),
            FileIndex(name="/remote.png", storage_mode=REMOTE),
        ]
    )

    assert [index.name for index in deleted] == ["/local.png"]
    assert store.count_files_by_mode(REMOTE) == 1


# Move


def test_move_rejects_mixed_modes_before_io(remote_service, remote_backend, store, local_backend):
    target = _group(remote_service)
    local_file = _upload(remote_service, "a.png")
    remote_file = _upload(remote_service, "b.png", mode=REMOTE)
    calls_before = list(remote_backend.calls)

    with pytest.raises(MixedStorageModeError):
        remote_service.move(
            FileMoveRequest(file_ids=[local_file.file_id, remote_file.file_id], new_file_group_id=target.file_group_id)
        )

    assert remote_backend.calls == calls_before
    assert (local_backend.root / "a.png").exists()
    rows = store.get_files_with_group([local_file.file_id, remote_file.file_id])
    assert [row.file_group_id for row in rows] == [None, None]


def test_move_updates_only_confirmed_files(remote_service, remote_backend, store):
    target = _group(remote_service, name="docs", path="/docs", mode=REMOTE)
    first = _upload(remote_service, "a.png", mode=REMOTE)
    second = _upload(remote_service, "b.png", mode=REMOTE)
    remote_backend.refuse.add("/b.png")

    moved = remote_service.move(
        FileMoveRequest(file_ids=[first.file_id, second.file_id], new_file_group_id=target.file_group_id)
    )

    assert moved == ["/a.png"]
    rows = {row.file_id: row for row in store.get_files_with_group([first.file_id, second.file_id])}
    assert rows[first.file_id].file_group_id == target.file_group_id
    assert rows[first.file_id].file_name == "a.png"
    assert rows[first.file_id].storage_mode == REMOTE
    assert rows[second.file_id].file_group_id is None


def test_move_local_files_between_groups(service, local_backend, store):
    source = _group(service, name="src", path="/src")
    target = _group(service, name="dst", path="/dst")
    uploaded = _upload(service, "a.png", group_id=source.file_group_id)

    assert service.move(FileMoveRequest(file_ids=[uploaded.file_id], new_file_group_id=target.file_group_id)) == [
        "/src/a.png"
    ]
    assert (local_backend.root / "dst" / "a.png").exists()

    # Back to the storage root
    assert service.move(FileMoveRequest(file_ids=[uploaded.file_id])) == ["/dst/a.png"]
    assert (local_backend.root / "a.png").exists()
    assert store.get_files_with_group([uploaded.file_id])[0].file_group_id is None


def test_move_to_group_of_other_mode(remote_service):
    target = _group(remote_service, mode=REMOTE)
    uploaded = _upload(remote_service, "a.png")

    with pytest.raises(FileGroupNotFoundError):
        remote_service.move(FileMoveRequest(file_ids=[uploaded.file_id], new_file_group_id=target.file_group_id))


def test_move_skips_name_taken_in_target(service, local_backend):
    target = _group(service)
    _upload(service, "a.png", b"grouped", group_id=target.file_group_id)
    loose = _upload(service, "a.png", b"loose")

    assert service.move(FileMoveRequest(file_ids=[loose.file_id], new_file_group_id=target.file_group_id)) == []
    assert (local_backend.root / "img" / "a.png").read_bytes() == b"grouped"


# Listing


def test_list_files_pages_and_filters(service):
    for name, data in (("a.png", b"1"), ("b.txt", b"22"), ("c.png", b"333")):
        _upload(service, name, data)

    page = service.list_files(page=1, size=2, sort=FileSort.SIZE_ASC)
    assert page.total_data == 3
    assert page.total_pages == 2
    assert [item.display_name for item in page.data] == ["a.png", "b.txt"]

    everything = service.list_files(page=0)
    assert len(everything.data) == 3
    assert everything.total_pages == 1

    filtered = service.list_files(key=".png", sort=FileSort.CREATE_TIME_ASC)
    assert [item.url for item in filtered.data] == ["/upload/a.png", "/upload/c.png"]


def test_list_files_by_mode_and_group(remote_service):
    group = _group(remote_service, mode=REMOTE)
    _upload(remote_service, "local.png")
    _upload(remote_service, "remote.png", mode=REMOTE, group_id=group.file_group_id)

    remote_page = remote_service.list_files(mode=REMOTE)
    assert [item.display_name for item in remote_page.data] == ["remote.png"]
    assert remote_page.data[0].file_group_name == "g1"
    assert remote_page.data[0].url.endswith("/img/remote.png")

    grouped = remote_service.list_files(group_id=group.file_group_id)
    assert grouped.total_data == 1


def test_group_path_aliases_are_duplicates(service, local_backend):
    group = _group(service, path="/b")

    with pytest.raises(DuplicateFileGroupError):
        _group(service, name="alias", path="/a/../b")

    _upload(service, "x.png", b"first", group_id=group.file_group_id)
    second = _upload(service, "x.png", b"second", group_id=group.file_group_id)

    assert second.display_name != "x.png"
    assert (local_backend.root / "b" / "x.png").read_bytes() == b"first"


def test_add_group_cleans_dot_segments(service):
    assert _group(service, path="/img/./2024/../raw").path == "/img/raw"
    with pytest.raises(InvalidFileGroupError):
        _group(service, name="up", path="/img/..")


def test_upload_collision_keeps_real_name_parts(service):
    _upload(service, "report_final.pdf")

    renamed = _upload(service, "report_final.pdf")

    assert re.fullmatch(r"report_final_[a-z0-9]{5}\.pdf", renamed.display_name)


def test_delete_by_indexes_reports_each_row_once(service, store):
    _upload(service, "a.png")
    index = FileIndex(name="/a.png", storage_mode=LOCAL)

    deleted = service.delete_by_indexes([index, FileIndex(name="/a.png", storage_mode=LOCAL)])

    assert len(deleted) == 1
    assert store.count_files() == 0


def test_ensure_backend_builds_client_once(remote_service, remote_backend):
    builds = []
    remote_backend._build_client = lambda config: builds.append(config) or object()
    remote_backend.reset()

    remote_service.ensure_backend(REMOTE)
    remote_service.ensure_backend(REMOTE)

    assert len(builds) == 1
