"""Read-only access to repository contents.

Two providers are available: one backed by the local filesystem (optionally a
git checkout) and one backed by a pre-read snapshot of file contents.
"""

from __future__ import annotations

import fnmatch
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

DEFAULT_EXCLUDE_PATTERNS = (
    "node_modules",
    "dist",
    ".git",
    "coverage",
    ".next",
    ".cache",
    "build",
    ".venv",
    "venv",
    "__pycache__",
    ".pytest_cache",
    ".tox",
)


def matches_glob(path: str, pattern: str) -> bool:
    """Match ``path`` against a glob where ``**/`` may also match zero directories."""
    candidate = PurePosixPath(path).as_posix()
    if pattern.startswith("**/"):
        tail = pattern[3:]
        if "/" not in tail:
            return fnmatch.fnmatchcase(PurePosixPath(candidate).name, tail)
        return fnmatch.fnmatchcase(candidate, pattern) or fnmatch.fnmatchcase(candidate, tail)
    return fnmatch.fnmatchcase(candidate, pattern)


def matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(matches_glob(path, pattern) for pattern in patterns)


def is_excluded(path: str, exclude_patterns: Iterable[str]) -> bool:
    """Return ``True`` when any path segment (or the path itself) is excluded."""
    parts = PurePosixPath(path).parts
    for pattern in exclude_patterns:
        if any(ch in pattern for ch in "*?["):
            if fnmatch.fnmatchcase(path, pattern) or any(
                fnmatch.fnmatchcase(part, pattern) for part in parts
            ):
                return True
        elif pattern in parts or path.startswith(pattern.rstrip("/") + "/"):
            return True
    return False


class ContentProvider:
    """Interface used by the phases to list and read repository files.

    Paths passed to and returned from a provider are POSIX paths relative to
    the provider root.
    """

    def walk(
        self,
        directory: str = "",
        *,
        exclude_patterns: Sequence[str] = DEFAULT_EXCLUDE_PATTERNS,
        max_files: Optional[int] = None,
        include_extensions: Optional[Sequence[str]] = None,
    ) -> List[str]:
        raise NotImplementedError

    def read(self, path: str) -> str:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def commit_hash(self) -> Optional[str]:
        return None

    def read_or_none(self, path: str) -> Optional[str]:
        try:
            return self.read(path)
        except (OSError, KeyError, UnicodeDecodeError):
            return None


class FilesystemContentProvider(ContentProvider):
    """Provider reading straight from a directory tree."""

    def __init__(self, root: Path | str, *, git: Optional[GitRepository] = None) -> None:
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise FileNotFoundError(f"Repository root does not exist: {self.root}")
        self._git = git

    @property
    def git(self) -> Optional[GitRepository]:
        """Return the git repository at the root, if there is one."""
        if self._git is None and (self.root / ".git").exists():
            try:
                self._git = GitRepository(self.root)
            except GitError:
                return None
        return self._git

    def walk(
        self,
        directory: str = "",
        *,
        exclude_patterns: Sequence[str] = DEFAULT_EXCLUDE_PATTERNS,
        max_files: Optional[int] = None,
        include_extensions: Optional[Sequence[str]] = None,
    ) -> List[str]:
        start = (self.root / directory).resolve() if directory else self.root
        if not start.is_dir():
            return []
        results: List[str] = []
        for current, dirnames, filenames in os.walk(start):
            current_path = Path(current)
            relative_dir = current_path.relative_to(self.root).as_posix()
            if relative_dir == ".":
                relative_dir = ""
            dirnames[:] = sorted(
                name
                for name in dirnames
                if not is_excluded(_join(relative_dir, name), exclude_patterns)
            )
            for name in sorted(filenames):
                relative = _join(relative_dir, name)
                if is_excluded(relative, exclude_patterns):
                    continue
                if include_extensions and not name.endswith(tuple(include_extensions)):
                    continue
                results.append(relative)
                if max_files is not None and len(results) >= max_files:
                    return results
        return results

    def read(self, path: str) -> str:
        return (self.root / path).read_text(encoding="utf-8")

    def exists(self, path: str) -> bool:
        return (self.root / path).exists()

    def commit_hash(self) -> Optional[str]:
        repo = self.git
        if repo is None:
            return None
        return repo.current_head()


class SnapshotContentProvider(ContentProvider):
    """Provider over an in-memory mapping of path to file contents."""

    def __init__(self, files: Mapping[str, str], *, commit: Optional[str] = None) -> None:
        self._files: Dict[str, str] = {
            PurePosixPath(path).as_posix(): content for path, content in files.items()
        }
        self._commit = commit

    def walk(
        self,
        directory: str = "",
        *,
        exclude_patterns: Sequence[str] = DEFAULT_EXCLUDE_PATTERNS,
        max_files: Optional[int] = None,
        include_extensions: Optional[Sequence[str]] = None,
    ) -> List[str]:
        prefix = directory.rstrip("/") + "/" if directory else ""
        results: List[str] = []
        for path in sorted(self._files):
            if prefix and not path.startswith(prefix):
                continue
            if is_excluded(path, exclude_patterns):
                continue
            if include_extensions and not path.endswith(tuple(include_extensions)):
                continue
            results.append(path)
            if max_files is not None and len(results) >= max_files:
                break
        return results

    def read(self, path: str) -> str:
        return self._files[PurePosixPath(path).as_posix()]

    def exists(self, path: str) -> bool:
        key = PurePosixPath(path).as_posix().rstrip("/")
        if key in self._files:
            return True
        return any(name.startswith(key + "/") for name in self._files)

    def commit_hash(self) -> Optional[str]:
        return self._commit


def _join(directory: str, name: str) -> str:
    return f"{directory}/{name}" if directory else name


__all__ = [
    "ContentProvider",
    "DEFAULT_EXCLUDE_PATTERNS",
    "FilesystemContentProvider",
    "SnapshotContentProvider",
    "is_excluded",
    "matches_any",
    "matches_glob",
]
