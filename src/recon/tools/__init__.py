"""Repository, version-control and cancellation helpers used by the phases."""

from .cancellation import CancellationRegistry, default_registry
from .content import (
    ContentProvider,
    FilesystemContentProvider,
    SnapshotContentProvider,
    is_excluded,
    matches_any,
    matches_glob,
)
from .scanner import DiscoveredTest, ParsedTestFile, find_related_source_files, parse_test_file
from .vcs import ChangedFile, ChangedFiles, GitError, GitRepository

__all__ = [
    "CancellationRegistry",
    "ChangedFile",
    "ChangedFiles",
    "ContentProvider",
    "DiscoveredTest",
    "FilesystemContentProvider",
    "GitError",
    "GitRepository",
    "ParsedTestFile",
    "SnapshotContentProvider",
    "default_registry",
    "find_related_source_files",
    "is_excluded",
    "matches_any",
    "matches_glob",
    "parse_test_file",
]
