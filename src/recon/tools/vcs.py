"""Minimal git helpers
The helpers below provide just enough structure to resolve commits, compare
two revisions, and read file contents at a given revision.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence

import shutil
import subprocess


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class ChangedFile:
    """One entry of ``git diff --name-status``."""

    path: str
    status: str
    previous_path: str | None = None

    @property
    def is_added(self) -> bool:
        return self.status == "A"

    @property
    def is_deleted(self) -> bool:
        return self.status == "D"


@dataclass(slots=True)
class ChangedFiles:
    """Result of comparing two revisions.

    ``success`` is ``False`` when git could not produce a diff; callers decide
    how to degrade, the error text is kept in ``error``.
    """

    base: str
    head: str
    files: List[ChangedFile] = field(default_factory=list)
    success: bool = True
    error: str | None = None

    def paths(self, *, include_deleted: bool = False) -> List[str]:
        return [
            entry.path
            for entry in self.files
            if include_deleted or not entry.is_deleted
        ]

    def added_paths(self) -> set[str]:
        return {entry.path for entry in self.files if entry.is_added}


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(cls, root: Path | str) -> "GitRepository":
        """Initialise a new git repository at ``root`` with an initial commit."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        git_dir = path / ".git"
        if git_dir.exists():
            shutil.rmtree(git_dir)

        def _run(args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
            return _invoke_git(path, args, check=check)

        _run(["init"])

        def _ensure_config(key: str, value: str) -> None:
            probe = _run(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                _run(["config", key, value])

        _ensure_config("user.email", "recon@example.com")
        _ensure_config("user.name", "Intent Reconciler")

        _run(["add", "."])
        _run(["commit", "--allow-empty", "-m", "Initial commit"])

        return cls(path)

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _invoke_git(self.root, args, check=check)

    # --------------------------------------------------------------- revisions
    def current_head(self) -> str | None:
        """Return the full SHA of ``HEAD`` or ``None`` for an empty repository."""

        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def is_valid_commit(self, ref: str | None) -> bool:
        """Return ``True`` when ``ref`` resolves to a commit object."""

        if not ref or not ref.strip():
            return False
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref.strip()}^{{commit}}"], check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def changed_files(self, base: str, head: str = "HEAD") -> ChangedFiles:
        """Return the files that differ between ``base`` and ``head``.

        Failures are reported through the result rather than raised.
        """

        outcome = ChangedFiles(base=base, head=head)
        if not self.is_valid_commit(base):
            outcome.success = False
            outcome.error = f"Unknown base revision: {base}"
            return outcome
        if not self.is_valid_commit(head):
            outcome.success = False
            outcome.error = f"Unknown head revision: {head}"
            return outcome

        result = self._run_git(["diff", "--name-status", "-z", "-M", base, head], check=False)
        if result.returncode != 0:
            outcome.success = False
            outcome.error = result.stderr.strip() or result.stdout.strip() or "git diff failed"
            return outcome

        outcome.files = _parse_name_status(result.stdout)
        return outcome

    def file_at_commit(self, path: str, ref: str) -> str | None:
        """Return the contents of ``path`` at ``ref`` or ``None`` when absent."""

        result = self._run_git(["show", f"{ref}:{Path(path).as_posix()}"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        return self.current_head()


def _invoke_git(cwd: Path, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    process = subprocess.run(
        command,
        cwd=cwd,
        capture_output=True,
        text=False,
        check=False,
    )
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


def _parse_name_status(payload: str) -> List[ChangedFile]:
    """Parse NUL-separated ``--name-status -z`` output."""
    tokens = [token for token in payload.split("\0")]
    entries: List[ChangedFile] = []
    index = 0
    while index < len(tokens):
        status_token = tokens[index].strip()
        if not status_token:
            index += 1
            continue
        status = status_token[0]
        if status in {"R", "C"}:
            if index + 2 >= len(tokens):
                break
            previous, current = tokens[index + 1], tokens[index + 2]
            entries.append(ChangedFile(path=current, status=status, previous_path=previous))
            index += 3
            continue
        if index + 1 >= len(tokens):
            break
        entries.append(ChangedFile(path=tokens[index + 1], status=status))
        index += 2
    return entries


__all__ = ["ChangedFile", "ChangedFiles", "GitError", "GitRepository"]
