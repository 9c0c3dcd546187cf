import io

import pytest

from chestyfs.store import (
    DEFAULT_ROOT,
    PathKey,
    Store,
    cas_path_transform,
    default_path_transform,
)


def test_cas_path_transform_uses_sha1():
    key = cas_path_transform("abc")
    assert key.pathname == "a9993e364706816aba3e25717850c26c9cd0d89d"
    assert key.filename == key.pathname


def test_default_path_transform_is_identity():
    assert default_path_transform("name") == PathKey("name", "name")


def test_path_key_helpers():
    key = PathKey(pathname="one/two", filename="file")
    assert key.first_path_name() == "one"
    assert key.full_path() == "one/two/file"


def test_store_defaults():
    store = Store()
    assert str(store.root) == DEFAULT_ROOT
    assert store.path_transform is cas_path_transform


def test_write_and_read_round_trip(tmp_path):
    store = Store(tmp_path)
    written = store.write("TestUser", "zxcv.txt", "zxcv.txt_chunk_0", b"payload")
    assert written == len(b"payload")
    assert store.read("TestUser", "zxcv.txt", "zxcv.txt_chunk_0") == b"payload"
    assert store.has("TestUser", "zxcv.txt")


def test_write_from_stream(tmp_path):
    store = Store(tmp_path)
    data = b"x" * 100_000
    assert store.write("u", "f", "c", io.BytesIO(data)) == len(data)
    assert store.read("u", "f", "c") == data


def test_chunk_dir_layout(tmp_path):
    store = Store(tmp_path)
    assert store.chunk_dir("u", "f") == tmp_path / "u" / cas_path_transform("f").pathname


def test_has_is_false_for_other_user(tmp_path):
    store = Store(tmp_path)
    store.write("u1", "f", "c", b"1")
    assert not store.has("u2", "f")
    assert not store.has("u1", "g")


def test_delete_removes_file(tmp_path):
    store = Store(tmp_path)
    store.write("u", "f", "c0", b"1")
    store.write("u", "f", "c1", b"2")
    store.delete("u", "f")
    assert not store.has("u", "f")
    with pytest.raises(FileNotFoundError):
        store.read("u", "f", "c0")


def test_delete_missing_is_silent(tmp_path):
    store = Store(tmp_path)
    store.delete("u", "missing")
    assert not store.has("u", "missing")


def test_read_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Store(tmp_path).read("u", "f", "c")


def test_clear_removes_root(tmp_path):
    root = tmp_path / "data"
    store = Store(root, default_path_transform)
    store.write("u", "f", "c", b"1")
    store.clear()
    assert not root.exists()