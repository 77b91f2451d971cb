import json
import logging
import shutil

import pytest

from conftest import FakeClock, install_directly, sha256_hex
from engine_cache.exceptions import EngineIOError, InvalidVersionError, NotFoundError
from engine_cache.storage.store import SIDECAR_NAME, LocalStore


def test_commit_creates_a_complete_installation(store, clock):
    temp_path = store.new_temp_path("7.0.0")
    temp_path.write_bytes(b"payload")

    installation = store.commit("7.0.0", temp_path, "ab" * 32, "Robust_7.0.0.zip")

    install_dir = store.root / "7.0.0"
    assert installation.install_path == install_dir
    assert (install_dir / "Robust_7.0.0.zip").read_bytes() == b"payload"
    assert not temp_path.exists()

    record = json.loads((install_dir / SIDECAR_NAME).read_text())
    assert record["format"] == 1
    assert record["version"] == "7.0.0"
    assert record["signature"] == "ab" * 32
    assert record["installed_at"] == clock.now
    assert record["size_bytes"] == len(b"payload")


def test_commit_uses_default_package_name(store):
    install_directly(store, "7.0.0")
    assert store.get("7.0.0").package_file == "engine_7.0.0.zip"


def test_commit_failure_leaves_nothing_behind(store):
    missing = store.staging_dir / "never-downloaded.part"

    with pytest.raises(EngineIOError):
        store.commit("7.0.0", missing, "ab" * 32)

    assert not (store.root / "7.0.0").exists()
    assert list(store.staging_dir.iterdir()) == []
    assert not store.has("7.0.0")


def test_commit_rejects_unsafe_version_names(store):
    temp_path = store.new_temp_path("x")
    temp_path.write_bytes(b"payload")

    for bad in ("../outside", "a/b", ".hidden", ""):
        with pytest.raises(InvalidVersionError):
            store.commit(bad, temp_path, "ab" * 32)


def test_index_is_rebuilt_from_disk(tmp_path, clock):
    root = tmp_path / "engines"
    first = LocalStore(root, clock)
    install_directly(first, "7.0.0", b"payload")

    second = LocalStore(root, clock)

    assert second.versions() == {"7.0.0"}
    assert second.get_signature("7.0.0") == sha256_hex(b"payload")
    assert second.get_path("7.0.0") == root / "7.0.0"


def test_startup_scan_removes_leftovers(tmp_path, clock):
    root = tmp_path / "engines"
    store = LocalStore(root, clock)
    install_directly(store, "7.0.0")

    (root / "8.0.0").mkdir()
    (root / "8.0.0" / "engine_8.0.0.zip").write_bytes(b"half")
    (root / "8.0.0" / f"{SIDECAR_NAME}.tmp").write_text("{")
    (root / ".trash-6.0.0-deadbeef").mkdir()
    (root / ".staging" / "9.0.0-abc.part").write_bytes(b"partial")
    missing_package = root / "7.5.0"
    missing_package.mkdir()
    (missing_package / SIDECAR_NAME).write_text(
        json.dumps(
            {
                "version": "7.5.0",
                "signature": "00",
                "package_file": "gone.zip",
                "installed_at": 1.0,
            }
        )
    )

    rescanned = LocalStore(root, clock)

    assert rescanned.versions() == {"7.0.0"}
    assert sorted(p.name for p in root.iterdir()) == ["7.0.0"]


def test_sidecar_for_another_version_is_rejected(tmp_path, clock):
    root = tmp_path / "engines"
    store = LocalStore(root, clock)
    install_directly(store, "7.0.0")
    (root / "7.0.0").rename(root / "7.1.0")

    assert LocalStore(root, clock).versions() == set()


def test_touch_updates_and_persists_last_use(tmp_path):
    clock = FakeClock()
    root = tmp_path / "engines"
    store = LocalStore(root, clock)
    install_directly(store, "7.0.0")

    clock.advance(500)
    store.touch("7.0.0")

    assert store.get("7.0.0").last_used_at == clock.now
    assert LocalStore(root, clock).get("7.0.0").last_used_at == clock.now


def test_touch_missing_version_raises(store):
    with pytest.raises(NotFoundError):
        store.touch("7.0.0")


def test_get_returns_a_copy(store, clock):
    install_directly(store, "7.0.0")
    copy = store.get("7.0.0")
    copy.last_used_at = 0

    assert store.get("7.0.0").last_used_at == clock.now


def test_remove_is_idempotent(store):
    install_directly(store, "7.0.0")

    assert store.remove("7.0.0") is True
    assert store.remove("7.0.0") is False
    assert not (store.root / "7.0.0").exists()
    with pytest.raises(NotFoundError):
        store.get_path("7.0.0")


def test_remove_drops_record_when_directory_vanished(store):
    install_directly(store, "7.0.0")
    shutil.rmtree(store.root / "7.0.0")

    assert store.remove("7.0.0") is True
    assert not store.has("7.0.0")


def test_remove_failure_keeps_the_index(store, monkeypatch):
    install_directly(store, "7.0.0")

    def refuse(src, dst):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr("engine_cache.storage.store.os.rename", refuse)

    with pytest.raises(EngineIOError):
        store.remove("7.0.0")
    assert store.has("7.0.0")


def test_remove_all(store):
    install_directly(store, "1.0.0")
    install_directly(store, "2.0.0")

    assert store.remove_all() == ["1.0.0", "2.0.0"]
    assert store.versions() == set()


def test_installations_are_ordered_by_last_use(store, clock):
    install_directly(store, "b")
    clock.advance(1)
    install_directly(store, "a")
    clock.advance(1)
    store.touch("b")

    assert [i.version for i in store.installations()] == ["a", "b"]
    assert store.total_size_bytes() == 2 * len(b"engine")


def test_recommit_replaces_previous_installation(store):
    install_directly(store, "7.0.0", b"first")
    install_directly(store, "7.0.0", b"second")

    assert store.get_signature("7.0.0") == sha256_hex(b"second")
    assert (store.root / "7.0.0" / "engine_7.0.0.zip").read_bytes() == b"second"
    assert sorted(p.name for p in store.root.iterdir() if not p.name.startswith(".")) == [
        "7.0.0"
    ]


def test_startup_scan_leaves_foreign_directories_alone(tmp_path, clock, caplog):
    root = tmp_path / "engines"
    (root / "photos").mkdir(parents=True)
    (root / "photos" / "cat.jpg").write_bytes(b"meow")
    (root / "notes.txt").write_text("keep me")

    with caplog.at_level(logging.WARNING):
        store = LocalStore(root, clock)

    assert store.versions() == set()
    assert (root / "photos" / "cat.jpg").read_bytes() == b"meow"
    assert (root / "notes.txt").exists()
    assert "'photos'" in caplog.text
