# artifacts.py
from __future__ import annotations

import hashlib
import json
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .errors import ArtifactError
from .model import DatasetRef

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Managed datasets:
#   a dataset is a named sequence of immutable versions v1, v2, ...
#   `latest` always points at the highest version, tags point at any.
#
#   version digest = hash(sorted (relpath, sha256(contents), size) of files)
#
#   Committing content whose digest equals the latest version's digest is a
#   no-op that returns the latest version.
#
# Volumes:
#   plain directories inside a run's workspace, removed when the run ends.
#
# Layout:
#   root/
#     datasets/<ref>/dataset.json
#     datasets/<ref>/versions/v<N>/manifest.json
#     datasets/<ref>/versions/v<N>/files/...
#     runs/<run_id>/...
# ---------------------------------------------------------------------


DEFAULT_STORE_DIR = ".gradflow"
VERSION_RE = re.compile(r"^v(\d+)$")
RESERVED_TAGS = ("latest",)
_REF_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.relative_to(root)).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def fingerprint_dir(root: Path) -> Tuple[str, List[Tuple[str, str, int]]]:
    """
    Hash a directory tree deterministically.

    Returns (digest, [(relpath, sha256, size), ...]) sorted by relpath.
    """
    files: List[Tuple[str, str, int]] = []
    for f in _iter_files_under(root):
        files.append((_relpath(f, root), _hash_file_contents(f), f.stat().st_size))
    files.sort(key=lambda t: t[0])
    return _sha256_str(_json_dumps_stable(files)), files


def valid_tag(tag: str) -> bool:
    """`latest`, `vN` and anything with a colon are reserved."""
    return bool(tag) and tag not in RESERVED_TAGS and not VERSION_RE.match(tag) and ":" not in tag


def valid_dataset_name(ref: str) -> bool:
    """
    Slash-separated segments of letters, digits, `.`, `_` and `-`.

    `versions` is reserved below the first segment: it is where the parent
    dataset keeps its versions.
    """
    segments = ref.split("/")
    return (
        bool(ref)
        and all(_REF_SEGMENT_RE.match(s) for s in segments)
        and "versions" not in segments[1:]
    )


def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


@dataclass(frozen=True)
class DatasetVersion:
    ref: str
    number: int
    digest: str
    path: Path  # directory holding the version's files
    created_at: str
    file_count: int
    size: int
    message: str = ""
    tags: Tuple[str, ...] = ()

    @property
    def version(self) -> str:
        return f"v{self.number}"

    @property
    def spec(self) -> str:
        return f"{self.ref}:{self.version}"

    def to_dict(self) -> Dict:
        return {
            "ref": self.ref,
            "version": self.version,
            "digest": self.digest,
            "path": str(self.path),
            "created_at": self.created_at,
            "file_count": self.file_count,
            "size": self.size,
            "message": self.message,
            "tags": list(self.tags),
        }


class DatasetStore:
    """
    File-based managed dataset store.

    Thread-safe for concurrent commits from jobs running in the same
    process: file copies happen outside the lock, version allocation and the
    final rename happen inside it.
    """

    def __init__(self, root: str | Path = DEFAULT_STORE_DIR, *, create_missing: bool = True):
        self.root = Path(root).resolve()
        self.datasets_dir = self.root / "datasets"
        self.runs_dir = self.root / "runs"
        self.create_missing = create_missing
        self._lock = threading.RLock()

    # ---- paths ----

    def _dataset_dir(self, ref: str) -> Path:
        if not valid_dataset_name(ref):
            raise ArtifactError(ref, "invalid dataset name")
        return self.datasets_dir.joinpath(*ref.split("/"))

    def _meta_path(self, ref: str) -> Path:
        return self._dataset_dir(ref) / "dataset.json"

    def _versions_dir(self, ref: str) -> Path:
        return self._dataset_dir(ref) / "versions"

    # ---- metadata ----

    def _read_meta(self, ref: str) -> Dict:
        return json.loads(self._meta_path(ref).read_text(encoding="utf-8"))

    def _write_meta(self, ref: str, meta: Dict) -> None:
        path = self._meta_path(ref)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(meta, sort_keys=True, indent=2), encoding="utf-8")
        tmp.replace(path)

    def exists(self, ref: str) -> bool:
        return self._meta_path(ref).exists()

    def create(self, ref: str) -> None:
        """Create an empty dataset. No-op if it exists."""
        with self._lock:
            if self.exists(ref):
                return
            self._versions_dir(ref).mkdir(parents=True, exist_ok=True)
            self._write_meta(ref, {"ref": ref, "created_at": _now_iso(), "tags": {}})

    def list_datasets(self) -> List[str]:
        refs: List[str] = []

        def walk(d: Path) -> None:
            if (d / "dataset.json").exists():
                refs.append(_relpath(d, self.datasets_dir))
            for child in sorted(d.iterdir()):
                # never look inside version contents
                if child.is_dir() and not (child.name == "versions" and (d / "dataset.json").exists()):
                    walk(child)

        if self.datasets_dir.exists():
            walk(self.datasets_dir)
        return sorted(refs)

    # ---- versions ----

    def _load_version(self, ref: str, number: int, tags: Dict[str, str]) -> DatasetVersion:
        vdir = self._versions_dir(ref) / f"v{number}"
        manifest = json.loads((vdir / "manifest.json").read_text(encoding="utf-8"))
        version = f"v{number}"
        return DatasetVersion(
            ref=ref,
            number=number,
            digest=manifest["digest"],
            path=vdir / "files",
            created_at=manifest["created_at"],
            file_count=len(manifest["files"]),
            size=sum(size for _rel, _sha, size in manifest["files"]),
            message=manifest.get("message", ""),
            tags=tuple(sorted(t for t, v in tags.items() if v == version)),
        )

    def list_versions(self, ref: str) -> List[DatasetVersion]:
        if not self.exists(ref):
            raise ArtifactError(ref, "dataset not found")
        tags = self._read_meta(ref).get("tags", {})
        numbers = []
        for p in self._versions_dir(ref).iterdir():
            m = VERSION_RE.match(p.name)
            if m and (p / "manifest.json").exists():
                numbers.append(int(m.group(1)))
        return [self._load_version(ref, n, tags) for n in sorted(numbers)]

    def resolve(self, spec: str | DatasetRef) -> DatasetVersion:
        """Resolve `ref`, `ref:latest`, `ref:vN` or `ref:<tag>` to a version."""
        ds = spec if isinstance(spec, DatasetRef) else DatasetRef.parse(spec)
        versions = self.list_versions(ds.ref)
        if not versions:
            raise ArtifactError(ds.ref, "dataset has no versions")

        selector = ds.selector
        if selector == "latest":
            return versions[-1]

        m = VERSION_RE.match(selector)
        if m:
            number = int(m.group(1))
            for v in versions:
                if v.number == number:
                    return v
            raise ArtifactError(ds.ref, f"version {selector} not found")

        for v in versions:
            if selector in v.tags:
                return v
        raise ArtifactError(ds.ref, f"tag {selector!r} not found")

    def commit(self, ref: str, src: str | Path, *, message: str = "") -> DatasetVersion:
        """
        Store the contents of `src` as a new version of dataset `ref`.

        Returns the existing latest version instead when the content is
        identical to it.
        """
        src = Path(src)
        if not src.is_dir():
            raise ArtifactError(ref, f"cannot commit {src}: not a directory")

        with self._lock:
            if not self.exists(ref):
                if not self.create_missing:
                    raise ArtifactError(ref, "dataset does not exist; create it before writing to it")
                self.create(ref)

        digest, files = fingerprint_dir(src)
        versions_dir = self._versions_dir(ref)
        tmp = versions_dir / f".tmp-{uuid.uuid4().hex}"
        try:
            shutil.copytree(src, tmp / "files")
            manifest = {
                "ref": ref,
                "digest": digest,
                "created_at": _now_iso(),
                "message": message,
                "files": files,
            }

            with self._lock:
                versions = self.list_versions(ref)
                if versions and versions[-1].digest == digest:
                    return versions[-1]
                number = versions[-1].number + 1 if versions else 1
                manifest["number"] = number
                (tmp / "manifest.json").write_text(
                    json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
                )
                tmp.replace(versions_dir / f"v{number}")
                return self._load_version(ref, number, self._read_meta(ref).get("tags", {}))
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)

    def tag(self, ref: str, version: str, tag: str) -> DatasetVersion:
        """Point `tag` at an existing version (moves the tag if already set)."""
        if not valid_tag(tag):
            raise ArtifactError(ref, f"tag {tag!r} is reserved or invalid")
        with self._lock:
            target = self.resolve(DatasetRef(ref=ref, version=version))
            meta = self._read_meta(ref)
            meta.setdefault("tags", {})[tag] = target.version
            self._write_meta(ref, meta)
            return self.resolve(DatasetRef(ref=ref, version=target.version))

    def import_dir(self, ref: str, path: str | Path, *, message: str = "imported") -> DatasetVersion:
        """Seed a dataset from a local directory (e.g. a public dataset)."""
        self.create(ref)
        return self.commit(ref, path, message=message)


@dataclass
class Workspace:
    """
    Per-run scratch space for job outputs and volumes.

      root/<job>/outputs/<name>
    """
    root: Path

    def job_dir(self, job: str) -> Path:
        d = self.root / job
        d.mkdir(parents=True, exist_ok=True)
        return d

    def output_dir(self, job: str, name: str) -> Path:
        d = self.job_dir(job) / "outputs" / name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def cleanup(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root, ignore_errors=True)
