"""Tests for the path-scoped file store."""

import pytest

from foreman.errors import AccessDeniedError
from foreman.file_store import SecureFileStore


@pytest.fixture
def store(tmp_path):
    return SecureFileStore([tmp_path / "allowed"])


class TestAccess:
    def test_inside_root_allowed(self, store, tmp_path):
        assert store.is_allowed(tmp_path / "allowed" / "x" / "y.json")
        assert store.is_allowed(tmp_path / "allowed")

    def test_outside_root_denied(self, store, tmp_path):
        assert not store.is_allowed(tmp_path / "elsewhere")
        with pytest.raises(AccessDeniedError):
            store.validate(tmp_path / "allowed" / ".." / "elsewhere")

    def test_unrestricted_without_roots(self, tmp_path):
        assert SecureFileStore().is_allowed(tmp_path / "anything")

    async def test_io_outside_root_denied(self, store, tmp_path):
        with pytest.raises(AccessDeniedError):
            await store.write_text(tmp_path / "elsewhere.txt", "nope")
        assert not (tmp_path / "elsewhere.txt").exists()


class TestOperations:
    async def test_write_creates_parents_and_reads_back(self, store, tmp_path):
        path = tmp_path / "allowed" / "a" / "b.txt"
        await store.write_text(path, "hello")
        assert await store.read_text(path) == "hello"
        assert await store.exists(path)
        assert [p.name for p in path.parent.iterdir()] == ["b.txt"]

    async def test_overwrite(self, store, tmp_path):
        path = tmp_path / "allowed" / "f.txt"
        await store.write_text(path, "one")
        await store.write_text(path, "two")
        assert path.read_text() == "two"

    async def test_listdir(self, store, tmp_path):
        root = tmp_path / "allowed"
        await store.write_text(root / "b.txt", "")
        await store.write_text(root / "a.txt", "")
        assert [p.name for p in await store.listdir(root)] == ["a.txt", "b.txt"]
        assert await store.listdir(root / "missing") == []

    async def test_rm_file_dir_and_missing(self, store, tmp_path):
        root = tmp_path / "allowed"
        await store.write_text(root / "d" / "f.txt", "x")
        await store.rm(root / "d")
        assert not (root / "d").exists()
        await store.rm(root / "never-existed")

    async def test_copy_file(self, store, tmp_path):
        source = tmp_path / "source.png"
        source.write_bytes(b"\x89PNG")
        dest = tmp_path / "allowed" / "images" / "source.png"
        await store.copy_file(source, dest)
        assert dest.read_bytes() == b"\x89PNG"
