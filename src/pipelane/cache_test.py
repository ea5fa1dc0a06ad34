import json
import os
import shutil
import stat
import threading

from pipelane.cache import CacheHit, CacheMiss, CacheResolver, hash_files


def _write(root, rel, text):
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")
    return p


def _set_saved_at(store, key, when):
    man = store.manifest_path(key)
    data = json.loads(man.read_text(encoding="utf-8"))
    data["saved_at"] = when
    man.write_text(json.dumps(data), encoding="utf-8")


def test_key_is_deterministic_and_namespaced():
    k1 = CacheResolver.resolve(b'{"lockfileVersion": 2}', "linux", "npm")
    k2 = CacheResolver.resolve(b'{"lockfileVersion": 2}', "linux", "npm")
    assert k1 == k2
    assert k1.startswith("linux-npm-")
    assert CacheResolver.resolve(b'{"lockfileVersion": 2}', "macos", "npm") != k1
    assert CacheResolver.resolve(b'{"lockfileVersion": 2}', "linux", "yarn") != k1


def test_different_lockfile_bytes_give_different_keys():
    assert CacheResolver.resolve(b"a", "linux", "npm") != CacheResolver.resolve(b"b", "linux", "npm")


def test_save_is_first_writer_wins(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"

    _write(work, "deps/lib.txt", "v1")
    assert store.save("linux-npm-k", ["deps"], working_root=work) is True
    _write(work, "deps/lib.txt", "v2")
    assert store.save("linux-npm-k", ["deps"], working_root=work) is False

    shutil.rmtree(work / "deps")
    res = store.restore("linux-npm-k", working_root=work)
    assert isinstance(res, CacheHit)
    assert res.fallback is False
    assert (work / "deps" / "lib.txt").read_text(encoding="utf-8") == "v1"


def test_exact_miss_falls_back_to_newest_prefix_match(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"

    _write(work, "node_modules/m.txt", "old")
    store.save("linux-npm-aaa", ["node_modules"], working_root=work)
    _write(work, "node_modules/m.txt", "new")
    store.save("linux-npm-bbb", ["node_modules"], working_root=work)
    _set_saved_at(store, "linux-npm-aaa", 1000.0)
    _set_saved_at(store, "linux-npm-bbb", 2000.0)

    shutil.rmtree(work / "node_modules")
    res = store.restore("linux-npm-zzz", ["linux-npm-"], working_root=work)

    assert isinstance(res, CacheHit)
    assert res.fallback is True
    assert res.key == "linux-npm-bbb"
    assert res.requested == "linux-npm-zzz"
    assert (work / "node_modules" / "m.txt").read_text(encoding="utf-8") == "new"


def test_restore_keys_are_tried_in_declared_order(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"
    _write(work, "deps/x.txt", "x")
    store.save("linux-npm-1", ["deps"], working_root=work)
    store.save("linux-yarn-1", ["deps"], working_root=work)

    res = store.restore("linux-pnpm-9", ["linux-yarn-", "linux-npm-"], working_root=work)
    assert isinstance(res, CacheHit) and res.key == "linux-yarn-1"


def test_miss_when_nothing_matches(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    res = store.restore("linux-npm-abc", ["linux-npm-"], working_root=tmp_path)
    assert isinstance(res, CacheMiss)
    assert res.fallback_restored is False
    assert not res.hit


def test_paths_outside_the_working_root_are_restored_in_place(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"
    work.mkdir()
    home_npm = tmp_path / "home" / ".npm"
    _write(home_npm, "_cacache/index", "idx")

    store.save("linux-npm-k", [str(home_npm)], working_root=work)
    shutil.rmtree(home_npm)
    store.restore("linux-npm-k", working_root=work)

    assert (home_npm / "_cacache" / "index").read_text(encoding="utf-8") == "idx"


def test_concurrent_saves_for_one_key_have_a_single_writer(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    results = []
    barrier = threading.Barrier(6)

    def worker(i):
        work = tmp_path / f"work{i}"
        _write(work, "deps/who.txt", str(i))
        barrier.wait()
        results.append(store.save("linux-npm-shared", ["deps"], working_root=work))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(store.entries("linux-npm-shared")) == 1
    assert not list((tmp_path / "cache").glob("*.tmp"))


def test_hash_files_follows_lockfile_contents(tmp_path):
    lock = _write(tmp_path, "api/package-lock.json", '{"v": 1}')
    _write(tmp_path, "api/node_modules/dep/package-lock.json", "ignored")
    first = hash_files(tmp_path, ["**/package-lock.json"])
    assert b"api/package-lock.json" in first
    assert b"node_modules" not in first

    lock.write_text('{"v": 2}', encoding="utf-8")
    assert hash_files(tmp_path, ["**/package-lock.json"]) != first
    assert hash_files(tmp_path, ["nothing/*.lock"]) == b""


def test_prune_keeps_the_newest_entries(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"
    _write(work, "deps/a.txt", "a")
    for i in range(4):
        store.save(f"linux-npm-{i}", ["deps"], working_root=work)
        _set_saved_at(store, f"linux-npm-{i}", 1000.0 + i)

    removed = store.prune("linux-npm-", keep=2)

    assert sorted(removed) == ["linux-npm-0", "linux-npm-1"]
    assert [k for k, _ in store.entries("linux-npm-")] == ["linux-npm-3", "linux-npm-2"]


def test_restore_keeps_file_modes_and_symlinks(tmp_path):
    store = CacheResolver(tmp_path / "cache")
    work = tmp_path / "work"
    script = _write(work, "node_modules/react-scripts/bin/react-scripts.js", "#!/usr/bin/env node\n")
    script.chmod(0o755)
    (work / "node_modules" / ".bin").mkdir()
    os.symlink("../react-scripts/bin/react-scripts.js", work / "node_modules" / ".bin" / "react-scripts")

    store.save("linux-npm-k", ["node_modules"], working_root=work)
    shutil.rmtree(work / "node_modules")
    assert store.restore("linux-npm-k", working_root=work).hit

    link = work / "node_modules" / ".bin" / "react-scripts"
    assert link.is_symlink()
    assert os.readlink(link) == "../react-scripts/bin/react-scripts.js"
    assert link.read_text(encoding="utf-8") == "#!/usr/bin/env node\n"
    assert script.stat().st_mode & stat.S_IXUSR
