from __future__ import annotations

import pytest

from prf_vault.blobs import BlobStoreError, FileBlobStore, MemoryBlobStore, blob_key_for


def test_blob_key_is_deterministic_per_user():
    assert blob_key_for(7) == blob_key_for(7)
    assert blob_key_for(7) != blob_key_for(8)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryBlobStore()
    return FileBlobStore(tmp_path / "blobs")


def test_put_get_overwrite(store):
    key = blob_key_for(1)
    assert store.get(key) is None
    store.put(key, b"first")
    assert store.get(key) == b"first"
    store.put(key, b"second")
    assert store.get(key) == b"second"


def test_delete(store):
    key = blob_key_for(2)
    store.put(key, b"data")
    assert store.exists(key)
    store.delete(key)
    assert not store.exists(key)
    assert store.get(key) is None
    store.delete(key)


def test_file_store_writes_below_root(tmp_path):
    store = FileBlobStore(tmp_path / "blobs")
    store.put(blob_key_for(3), b"data")
    assert (tmp_path / "blobs" / "users" / "3" / "vault.bin").read_bytes() == b"data"
    assert not list((tmp_path / "blobs" / "users" / "3").glob(".tmp-*"))


@pytest.mark.parametrize("key", ["../escape", "users/../../x", "/abs", "", "a//b"])
def test_file_store_rejects_unsafe_keys(tmp_path, key):
    store = FileBlobStore(tmp_path / "blobs")
    with pytest.raises(BlobStoreError):
        store.put(key, b"data")


def test_exists_tracks_writes(store):
    key = blob_key_for(4)
    assert store.exists(key) is False
    store.put(key, b"")
    assert store.exists(key) is True
    assert store.exists(blob_key_for(5)) is False
