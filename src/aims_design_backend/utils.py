"""
Utility functions for identifier validation and filename handling.

This module provides helper functions for:
- Validating task identifiers before they address storage
- Sanitizing user-provided names for presentation as download filenames
- Building the human-readable artifact filename
- Ensuring directory creation with proper error handling
"""

from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import Dimensions

# Task identifiers are opaque hex/uuid-like tokens; nothing else may reach storage
TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Characters that are unsafe in filenames on common platforms, plus whitespace
UNSAFE_FILENAME_PATTERN = re.compile(r'[\\/:*?"<>|\x00-\x1f\s]+')

ARTIFACT_SUFFIX = ".psd"


class InvalidTaskIdError(ValueError):
    """Raised when a task identifier fails the allow-list check."""


def validate_task_id(task_id: str) -> str:
    """
    Check a task identifier against the allow-list.

    Args:
        task_id: The identifier supplied by the client

    Returns:
        The identifier unchanged when it is valid

    Raises:
        InvalidTaskIdError: If the identifier contains anything other than
            letters, digits, underscores or hyphens (this rejects ``..``,
            ``/`` and ``\\`` by construction)
    """
    if not task_id or ".." in task_id or "/" in task_id or "\\" in task_id:
        raise InvalidTaskIdError("Invalid task id")
    if not TASK_ID_PATTERN.fullmatch(task_id):
        raise InvalidTaskIdError("Invalid task id")
    return task_id


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filename-safe label from user input.

    Unlike a slug, case and non-ASCII characters (e.g. Chinese project names)
    are preserved; only characters that are unsafe in filenames are replaced.

    Example:
        >>> sanitize_label("My Box: v2", "project")
        "My_Box_v2"
        >>> sanitize_label("///", "project")
        "project"
    """
    cleaned = UNSAFE_FILENAME_PATTERN.sub("_", label.strip())
    cleaned = cleaned.strip("_.")
    return cleaned or fallback


def format_measure(value: float) -> str:
    return f"{value:g}"


def build_artifact_filename(project_name: str, dimensions: Dimensions, now: Optional[datetime] = None) -> str:
    """
    Build the presentation filename for a finished artifact.

    Format: ``{project}_{length}x{width}x{height}cm_{yyyyMMddHHmm}.psd``.
    The name is cosmetic and never used for lookups.
    """
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M")
    project = sanitize_label(project_name, fallback="project")
    size = "x".join(format_measure(v) for v in (dimensions.length, dimensions.width, dimensions.height))
    return f"{project}_{size}cm_{stamp}{ARTIFACT_SUFFIX}"


def sanitize_download_name(file_name: Optional[str], task_id: str) -> str:
    """
    Normalize a client-requested download filename.

    Any directory part is dropped, unsafe characters are replaced and the
    ``.psd`` suffix is enforced. Falls back to ``{task_id}.psd``.
    """
    fallback = f"{task_id}{ARTIFACT_SUFFIX}"
    if not file_name:
        return fallback
    # Clients may send either separator; keep only the last segment
    base = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    stem = base[: -len(ARTIFACT_SUFFIX)] if base.lower().endswith(ARTIFACT_SUFFIX) else base
    safe_stem = sanitize_label(stem, fallback="")
    if not safe_stem:
        return fallback
    return f"{safe_stem}{ARTIFACT_SUFFIX}"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
