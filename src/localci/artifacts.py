# artifacts.py
from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .errors import ArtifactNotFound, ScopeError

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Artifacts are bytes keyed by (job name, relative path).
#
#   root/                      (in memory)
#     <job_name>/
#       <path> -> bytes
#
# Each job only ever writes under its own name, so workers never write the
# same key and the store needs no lock. A job reads through a ScopedArtifacts
# view that only exposes producers from its dependency closure; the scheduler
# only builds that view once every producer has finished.
# ---------------------------------------------------------------------


def _normalize(path: str) -> str:
    p = PurePosixPath(str(path).replace("\\", "/"))
    if p.is_absolute() or ".." in p.parts:
        raise ValueError(f"Artifact path must be relative and stay inside the job dir: {path!r}")
    norm = str(p)
    if norm in ("", "."):
        raise ValueError("Artifact path must not be empty")
    return norm


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _resolve_patterns(root: Path, pattern: str) -> List[Path]:
    """
    Expand one artifact pattern into files under root.
    Supports:
      - file path: "dist/app.tar.gz"
      - dir path:  "dist/" (every file below it)
      - glob:      "reports/*.xml", "build/**/*.whl"
    """
    pattern = pattern.strip()
    if not pattern:
        return []

    candidates: List[Path] = []
    direct = root / pattern
    if direct.exists():
        candidates.append(direct)
    else:
        try:
            candidates.extend(sorted(root.glob(pattern)))
        except (ValueError, NotImplementedError):
            candidates = []

    files: List[Path] = []
    root_resolved = root.resolve()
    for c in candidates:
        try:
            c.resolve().relative_to(root_resolved)
        except ValueError:
            continue  # symlink or pattern escaping the sandbox
        if c.is_file():
            files.append(c)
        elif c.is_dir():
            files.extend(_iter_files_under(c))

    seen = set()
    uniq: List[Path] = []
    for f in files:
        key = str(f.resolve())
        if key not in seen:
            seen.add(key)
            uniq.append(f)
    return uniq


class ArtifactStore:
    """In-memory artifact store for one pipeline run."""

    def __init__(self) -> None:
        self._blobs: Dict[str, Dict[str, bytes]] = {}

    def put(self, job: str, path: str, data: bytes) -> None:
        self._blobs.setdefault(job, {})[_normalize(path)] = bytes(data)

    def get(self, job: str, path: str) -> bytes:
        try:
            return self._blobs[job][_normalize(path)]
        except KeyError:
            raise ArtifactNotFound(job, path) from None

    def paths(self, job: str) -> List[str]:
        return sorted(self._blobs.get(job, {}))

    def jobs(self) -> List[str]:
        return sorted(self._blobs)

    def __len__(self) -> int:
        return sum(len(files) for files in self._blobs.values())

    def collect(self, job: str, root: str | Path, patterns: Sequence[str]) -> Tuple[List[str], List[str]]:
        """
        Store every file under `root` matching the job's declared patterns.

        Returns (stored paths, patterns that matched nothing).
        """
        root_p = Path(root)
        stored: List[str] = []
        unmatched: List[str] = []
        for pattern in patterns:
            files = _resolve_patterns(root_p, pattern)
            if not files:
                unmatched.append(pattern)
                continue
            for f in files:
                rel = _relpath(f, root_p)
                self.put(job, rel, f.read_bytes())
                if rel not in stored:
                    stored.append(rel)
        return stored, unmatched

    def scoped(
        self,
        requester: str,
        producers: Sequence[str],
        sources: Optional[Sequence[str]] = None,
    ) -> "ScopedArtifacts":
        return ScopedArtifacts(self, requester, producers, sources)

    def export(self, directory: str | Path) -> List[Path]:
        """Copy every artifact to directory/<job>/<path>. Returns the written files."""
        out_root = Path(directory)
        written: List[Path] = []
        for job in self.jobs():
            for rel in self.paths(job):
                dest = out_root / job / rel
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(self._blobs[job][rel])
                written.append(dest)
        return written


class ScopedArtifacts:
    """
    Read-only view of the store for one job.

    `producers` is the requester's dependency closure in topological order;
    reading from anyone else raises ScopeError. `sources` narrows what
    `materialize` copies by default (a job's explicit `dependencies`).
    """

    def __init__(
        self,
        store: ArtifactStore,
        requester: str,
        producers: Sequence[str],
        sources: Optional[Sequence[str]] = None,
    ):
        self._store = store
        self.requester = requester
        self.producers: Tuple[str, ...] = tuple(producers)
        self.sources: Tuple[str, ...] = self.producers if sources is None else tuple(sources)
        self._allowed: FrozenSet[str] = frozenset(self.producers)

    def _check(self, producer: str, path: str | None = None) -> None:
        if producer not in self._allowed:
            raise ScopeError(requester=self.requester, producer=producer, path=path)

    def get(self, producer: str, path: str) -> bytes:
        self._check(producer, path)
        return self._store.get(producer, path)

    def paths(self, producer: str) -> List[str]:
        self._check(producer)
        return self._store.paths(producer)

    def materialize(self, dest: str | Path, producers: Sequence[str] | None = None) -> List[str]:
        """
        Write artifacts of `producers` (default: `sources`) into dest.
        Later producers in topological order overwrite earlier ones.
        """
        dest_p = Path(dest)
        written: List[str] = []
        for producer in (self.sources if producers is None else producers):
            for rel in self.paths(producer):
                target = dest_p / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(self.get(producer, rel))
                written.append(f"{producer}:{rel}")
        return written
