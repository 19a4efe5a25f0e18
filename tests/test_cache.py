"""CacheStore / CacheManager tests."""

from __future__ import annotations

import io
import os
import tarfile

import pytest
from conftest import make_job

from crateci.cache import CacheManager, CacheStore, cache_key
from crateci.model import CacheKey


@pytest.fixture
def manager(tmp_path) -> CacheManager:
    return CacheManager(CacheStore(tmp_path / "cache"))


class TestCacheKey:
    def test_deterministic(self) -> None:
        assert cache_key(make_job(features="+popcnt")) == cache_key(make_job(features="+popcnt"))

    def test_every_axis_counts(self) -> None:
        base = make_job()
        keys = {
            cache_key(base),
            cache_key(make_job(target="i686-pc-windows-msvc")),
            cache_key(make_job(features="+popcnt")),
            cache_key(make_job(cpu="broadwell")),
            cache_key(make_job(channel="nightly")),
        }
        assert len(keys) == 5

    def test_display_name_does_not_count(self) -> None:
        assert cache_key(make_job(name="a")) == cache_key(make_job(name="b"))

    def test_version_bump_changes_key(self) -> None:
        job = make_job()
        assert cache_key(job, version="v1") != cache_key(job, version="v2")


class TestStore:
    def test_save_then_restore(self, manager) -> None:
        key = cache_key(make_job())
        manager.save(key, b"payload", job=make_job())
        assert manager.restore(key) == b"payload"
        assert manager.store.read_manifest(key)["job"]["target"] == "x86_64-pc-windows-msvc"

    def test_missing_key_is_none(self, manager) -> None:
        assert manager.restore(CacheKey("0" * 64)) is None

    def test_empty_payload_rejected(self, manager) -> None:
        with pytest.raises(ValueError):
            manager.save(cache_key(make_job()), b"")

    def test_overwrite(self, manager) -> None:
        key = cache_key(make_job())
        manager.save(key, b"one")
        manager.save(key, b"two")
        assert manager.restore(key) == b"two"

    def test_no_temp_files_left(self, manager) -> None:
        key = cache_key(make_job())
        manager.save(key, b"payload")
        entry = manager.store.artifact_path(key).parent
        assert not any(p.suffix == ".tmp" for p in entry.iterdir())

    def test_keys_and_delete(self, manager) -> None:
        a, b = cache_key(make_job(target="a")), cache_key(make_job(target="b"))
        manager.save(a, b"a")
        manager.save(b, b"b")
        assert sorted(k.value for k in manager.store.keys()) == sorted([a.value, b.value])
        manager.store.delete(a)
        assert not manager.store.contains(a)
        assert manager.store.contains(b)


class TestPackUnpack:
    def test_tree_round_trip(self, manager, tmp_path) -> None:
        src = tmp_path / "src"
        (src / "deps" / "sub").mkdir(parents=True)
        (src / "deps" / "a.rlib").write_bytes(b"a")
        (src / "deps" / "sub" / "b.rlib").write_bytes(b"b")

        blob = manager.pack(["deps"], src)

        dst = tmp_path / "dst"
        dst.mkdir()
        written = manager.unpack(blob, dst)
        assert len(written) == 2
        assert (dst / "deps" / "sub" / "b.rlib").read_bytes() == b"b"

    def test_nothing_to_pack(self, manager, tmp_path) -> None:
        assert manager.pack(["does-not-exist"], tmp_path) is None

    def test_excludes(self, manager, tmp_path) -> None:
        (tmp_path / "deps").mkdir()
        (tmp_path / "deps" / "keep.rlib").write_bytes(b"k")
        (tmp_path / "deps" / "scratch.tmp").write_bytes(b"x")
        blob = manager.pack(["deps"], tmp_path)
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            assert tar.getnames() == ["deps/keep.rlib"]

    def test_unpack_refuses_escape(self, manager, tmp_path) -> None:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            data = b"evil"
            info = tarfile.TarInfo("../outside.txt")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        root = tmp_path / "root"
        root.mkdir()
        with pytest.raises(ValueError, match="escapes"):
            manager.unpack(buf.getvalue(), root)
        assert not (tmp_path / "outside.txt").exists()


class TestPrune:
    def test_keeps_newest(self, manager) -> None:
        keys = [cache_key(make_job(target=t)) for t in ("a", "b", "c")]
        for i, k in enumerate(keys):
            manager.save(k, b"x")
            os.utime(manager.store.artifact_path(k), (1000 + i, 1000 + i))

        dropped = manager.prune(keep=1)

        assert {k.value for k in dropped} == {keys[0].value, keys[1].value}
        assert [k.value for k in manager.store.keys()] == [keys[2].value]
