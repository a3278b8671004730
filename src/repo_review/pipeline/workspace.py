"""Repository clone and source file discovery."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from repo_review.pipeline.errors import CloneError
from repo_review.pipeline.failure_classifier import classify_failure
from repo_review.pipeline.models import FailureClass, SubjectView

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_BYTES = 100 * 1024

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".js": "JavaScript",
    ".jsx": "JavaScript React",
    ".ts": "TypeScript",
    ".tsx": "TypeScript React",
    ".mjs": "JavaScript ES Module",
    ".cjs": "JavaScript CommonJS",
    ".py": "Python",
    ".java": "Java",
    ".c": "C",
    ".cpp": "C++",
    ".h": "C Header",
    ".hpp": "C++ Header",
    ".go": "Go",
    ".rb": "Ruby",
    ".php": "PHP",
    ".rs": "Rust",
    ".swift": "Swift",
    ".kt": "Kotlin",
    ".css": "CSS",
    ".scss": "SCSS",
    ".html": "HTML",
    ".vue": "Vue",
    ".svelte": "Svelte",
}

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(LANGUAGE_BY_EXTENSION)

IGNORED_DIRS: frozenset[str] = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        "coverage",
        ".next",
        ".nuxt",
        "vendor",
        "__pycache__",
        ".pytest_cache",
        "venv",
        "env",
        ".venv",
    },
)


def detect_language(path: str | Path) -> str:
    return LANGUAGE_BY_EXTENSION.get(Path(path).suffix, "Unknown")


@dataclass(slots=True)
class SourceFile:
    """One file selected for analysis."""

    relative_path: str
    content: str
    language: str
    size_bytes: int
    line_count: int


@dataclass(slots=True)
class ClonedWorkspace:
    """Checked-out repository; `release()` removes it and is safe to call twice."""

    path: Path
    cleanup: Callable[[], None] | None = None
    _released: bool = field(default=False, repr=False)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self.cleanup is not None:
            self.cleanup()


class Cloner(Protocol):
    """Produces a local checkout of a subject repository."""

    def clone(self, subject: SubjectView) -> ClonedWorkspace:
        """Clone the subject; raise `CloneError` on failure."""


class FileEnumerator(Protocol):
    """Lists the analyzable files of a checkout."""

    def list(self, path: Path) -> list[SourceFile]:
        """Return analyzable files sorted by relative path."""


class GitCloner:
    """Shallow single-branch clone with the git CLI into a temporary directory."""

    def __init__(
        self,
        *,
        git_binary: str = "git",
        timeout_seconds: float = 300.0,
        workspace_root: Path | None = None,
    ) -> None:
        self.git_binary = git_binary
        self.timeout_seconds = timeout_seconds
        self.workspace_root = workspace_root

    def clone(self, subject: SubjectView) -> ClonedWorkspace:
        if self.workspace_root is not None:
            self.workspace_root.mkdir(parents=True, exist_ok=True)
        target = Path(tempfile.mkdtemp(prefix="repo-review-", dir=self.workspace_root))
        command = [
            self.git_binary,
            "clone",
            "--depth",
            "1",
            "--single-branch",
            "--branch",
            subject.branch,
            subject.repo_url,
            str(target),
        ]
        logger.info("Cloning %s (branch: %s)", subject.repo_url, subject.branch)
        started = time.monotonic()
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                check=False,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except subprocess.TimeoutExpired as error:
            _remove_tree(target)
            raise CloneError(
                f"Clone timed out after {self.timeout_seconds:g}s: {subject.repo_url}",
                failure_class=FailureClass.TIMEOUT,
            ) from error
        except OSError as error:
            _remove_tree(target)
            raise CloneError(f"Clone failed to start: {error}") from error

        if completed.returncode != 0:
            _remove_tree(target)
            stderr = completed.stderr.strip() or completed.stdout.strip()
            classification = classify_failure(source="git_clone", message=stderr)
            raise CloneError(
                f"Clone failed (exit {completed.returncode}): {stderr[:500]}",
                failure_class=classification.failure_class,
            )

        logger.info("Cloned %s in %.2fs: %s", subject.repo_url, time.monotonic() - started, target)
        return ClonedWorkspace(path=target, cleanup=lambda: _remove_tree(target))


class FilesystemEnumerator:
    """Walks a checkout and applies the extension, directory and size filters."""

    def __init__(self, *, max_file_bytes: int = DEFAULT_MAX_FILE_BYTES) -> None:
        self.max_file_bytes = max_file_bytes

    def list(self, path: Path) -> list[SourceFile]:
        files: list[SourceFile] = []
        for current_dir, dir_names, file_names in os.walk(path):
            dir_names[:] = sorted(name for name in dir_names if name not in IGNORED_DIRS)
            for file_name in sorted(file_names):
                full_path = Path(current_dir) / file_name
                source = self._read(full_path, root=path)
                if source is not None:
                    files.append(source)
        files.sort(key=lambda item: item.relative_path)
        logger.info("Found %s code files in %s", len(files), path)
        return files

    def _read(self, full_path: Path, *, root: Path) -> SourceFile | None:
        relative = full_path.relative_to(root).as_posix()
        if full_path.suffix not in SUPPORTED_EXTENSIONS or not full_path.is_file():
            return None
        try:
            size = full_path.stat().st_size
            if size > self.max_file_bytes:
                logger.debug("Skipping large file (%s bytes): %s", size, relative)
                return None
            content = full_path.read_bytes().decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Skipping non UTF-8 file: %s", relative)
            return None
        except OSError as error:
            logger.warning("Failed to read %s: %s", relative, error)
            return None
        if not content.strip():
            return None
        return SourceFile(
            relative_path=relative,
            content=content,
            language=detect_language(full_path),
            size_bytes=size,
            line_count=len(content.split("\n")),
        )


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as error:
        logger.warning("Failed to clean up workspace %s: %s", path, error)
