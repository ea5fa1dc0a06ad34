# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import platform
import tarfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .trigger import glob_match, matches

# ---------------------------------------------------------------------
# Dependency caching
# ---------------------------------------------------------------------
#   key = "<os>-<domain>-" + sha256(lockfile bytes)
#
# Store layout:
#   root/
#     <key>.tar.gz           archived cache paths, one top-level dir per path
#     <key>.manifest.json    what was saved and when
#
# Restore tries the exact key first, then each restore-key prefix in order
# (newest matching entry wins). Save never overwrites an existing key.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".pipelane/cache"
LOCKFILE_EXCLUDES = [".git/**", "**/node_modules/**", ".pipelane/**"]


@dataclass(frozen=True)
class CacheHit:
    key: str          # the key that was actually restored
    requested: str    # the key that was asked for
    fallback: bool    # True when restored through a restore-key prefix
    manifest: Dict = field(default_factory=dict)

    @property
    def hit(self) -> bool:
        return True

    @property
    def reason(self) -> str:
        if self.fallback:
            return f"fallback hit ({self.key[:24]}...)"
        return "hit"


@dataclass(frozen=True)
class CacheMiss:
    requested: str
    fallback_restored: bool = False
    detail: str = ""

    @property
    def hit(self) -> bool:
        return False

    @property
    def reason(self) -> str:
        return f"miss ({self.detail})" if self.detail else "miss"


CacheResult = Union[CacheHit, CacheMiss]


def os_identifier() -> str:
    return platform.system().lower() or "unknown"


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.relative_to(root).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _archive_members(root: Path) -> Iterable[Path]:
    """Files and symlinks under `root`. Linked directories are kept as links, not followed."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            yield base / name
        for name in dirnames:
            if (base / name).is_symlink():
                yield base / name


def hash_files(working_root: str | Path, patterns: Sequence[str]) -> bytes:
    """
    Fingerprint every file under `working_root` matching `patterns`.

    Returns bytes suitable for `CacheResolver.resolve`; empty when nothing
    matched. Paths are part of the fingerprint, so moving a lockfile changes it.
    """
    root = Path(working_root).resolve()
    excludes = ["!" + e for e in LOCKFILE_EXCLUDES]
    lines: List[str] = []
    for f in _iter_files_under(root):
        rel = _relpath(f, root)
        if matches(rel, list(patterns) + excludes):
            lines.append(f"{rel}:{_hash_file_contents(f)}")
    return "\n".join(lines).encode("utf-8")


def hash_directory(path: str | Path, excludes: Sequence[str] = ()) -> str:
    """Stable digest of a directory tree (relative paths + contents), skipping `excludes` globs."""
    root = Path(path).resolve()
    h = hashlib.sha256()
    if root.is_file():
        h.update(_hash_file_contents(root).encode("ascii"))
        return h.hexdigest()
    for f in _iter_files_under(root):
        rel = _relpath(f, root)
        if rel.startswith(".git/") or "/.git/" in rel:
            continue
        if excludes and any(glob_match(rel, e) for e in excludes):
            continue
        h.update(rel.encode("utf-8"))
        h.update(b"\0")
        h.update(_hash_file_contents(f).encode("ascii"))
        h.update(b"\n")
    return h.hexdigest()


def _resolve_entry(entry: str, working_root: Path) -> Path:
    p = Path(entry).expanduser()
    if not p.is_absolute():
        p = working_root / p
    return p.resolve()


class CacheResolver:
    """
    File-backed dependency cache.

    Safe to share between concurrently running pipelines: writers for the
    same key are serialized and the first one wins, distinct keys never wait
    on each other.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._guard = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    # ---- keys ----

    @staticmethod
    def resolve(lockfile_content: bytes, os_id: str, domain: str = "deps") -> str:
        return f"{os_id}-{domain}-{_sha256_bytes(lockfile_content)}"

    @staticmethod
    def default_restore_keys(os_id: str, domain: str) -> List[str]:
        return [f"{os_id}-{domain}-"]

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def exists(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _read_manifest(self, key: str) -> Dict:
        try:
            return json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}

    def entries(self, prefix: str = "") -> List[Tuple[str, float]]:
        """(key, saved_at) for stored entries starting with `prefix`, newest first."""
        out: List[Tuple[str, float]] = []
        for man in self.root.glob("*.manifest.json"):
            key = man.name[: -len(".manifest.json")]
            if not key.startswith(prefix) or not self.artifact_path(key).exists():
                continue
            saved_at = self._read_manifest(key).get("saved_at")
            if not isinstance(saved_at, (int, float)):
                saved_at = man.stat().st_mtime
            out.append((key, float(saved_at)))
        out.sort(key=lambda t: (t[1], t[0]), reverse=True)
        return out

    # ---- restore ----

    def _extract(self, key: str, working_root: Path) -> Dict:
        manifest = self._read_manifest(key)
        targets = manifest.get("paths") or []
        with tarfile.open(str(self.artifact_path(key)), mode="r:gz") as tar:
            for member in tar.getmembers():
                head, _, rest = member.name.partition("/")
                if not head.isdigit() or int(head) >= len(targets):
                    continue
                dest_root = _resolve_entry(targets[int(head)], working_root)
                # re-root the member so modes and links survive extraction
                if rest:
                    member.name, base = rest, dest_root
                else:
                    member.name, base = dest_root.name, dest_root.parent
                if member.islnk():
                    link_head, _, link_rest = member.linkname.partition("/")
                    if link_head == head and link_rest:
                        member.linkname = link_rest
                base.mkdir(parents=True, exist_ok=True)
                tar.extract(member, path=str(base), filter="data")
        return manifest

    def restore(
        self,
        key: str,
        restore_keys: Sequence[str] = (),
        *,
        working_root: str | Path = ".",
    ) -> CacheResult:
        """
        Restore cached paths for `key` into the working root.

        An exact hit is not stale. A fallback hit (matched through a
        restore-key prefix) may be, so callers still run install after it.
        """
        root = Path(working_root).resolve()

        if self.exists(key):
            try:
                manifest = self._extract(key, root)
            except (OSError, tarfile.TarError) as e:
                return CacheMiss(requested=key, detail=f"restore failed: {e}")
            return CacheHit(key=key, requested=key, fallback=False, manifest=manifest)

        for prefix in restore_keys:
            candidates = self.entries(prefix)
            if not candidates:
                continue
            found = candidates[0][0]
            try:
                manifest = self._extract(found, root)
            except (OSError, tarfile.TarError) as e:
                return CacheMiss(requested=key, detail=f"fallback restore failed: {e}")
            return CacheHit(key=found, requested=key, fallback=True, manifest=manifest)

        return CacheMiss(requested=key, fallback_restored=False)

    # ---- save ----

    def save(
        self,
        key: str,
        paths: Sequence[str],
        *,
        working_root: str | Path = ".",
    ) -> bool:
        """
        Archive `paths` under `key`. Returns False if the key already existed.

        First writer wins: an existing entry is never replaced.
        """
        root = Path(working_root).resolve()
        with self._lock_for(key):
            if self.exists(key):
                return False

            art = self.artifact_path(key)
            tmp = art.with_name(art.name + f".{threading.get_ident()}.tmp")
            manifest = {
                "key": key,
                "paths": list(paths),
                "saved_at": time.time(),
                "files": 0,
            }
            try:
                with tarfile.open(str(tmp), mode="w:gz") as tar:
                    for idx, entry in enumerate(paths):
                        src = _resolve_entry(entry, root)
                        if not src.exists():
                            continue
                        if src.is_file():
                            tar.add(str(src), arcname=str(idx), recursive=False)
                            manifest["files"] += 1
                            continue
                        for f in _archive_members(src):
                            arcname = f"{idx}/{f.relative_to(src).as_posix()}"
                            tar.add(str(f), arcname=arcname, recursive=False)
                            manifest["files"] += 1

                    payload = json.dumps(manifest, sort_keys=True).encode("utf-8")
                    info = tarfile.TarInfo(name=".pipelane_manifest.json")
                    info.size = len(payload)
                    info.mtime = int(time.time())
                    tar.addfile(info, fileobj=io.BytesIO(payload))

                tmp.replace(art)
                self.manifest_path(key).write_text(
                    json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
                )
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
            return True

    def prune(self, prefix: str, keep: int = 3) -> List[str]:
        """Keep only the newest `keep` entries under `prefix`. Returns removed keys."""
        removed: List[str] = []
        for key, _saved in self.entries(prefix)[keep:]:
            with self._lock_for(key):
                self.artifact_path(key).unlink(missing_ok=True)
                self.manifest_path(key).unlink(missing_ok=True)
            removed.append(key)
        return removed
