"""
Utility functions for file names and directories.

This module provides helper functions for:
- Sanitizing labels for bulk job directories
- Building download file names for generated documents
- Ensuring directory creation
"""

from __future__ import annotations

import re
from pathlib import Path

# Characters that are not safe in file names or directory labels.
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe, lowercase label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Value returned when nothing usable is left

    Example:
        >>> sanitize_label("Spring Drop #2", "bulk")
        'spring-drop-2'
        >>> sanitize_label("@#$", "bulk")
        'bulk'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def document_filename(article_code: str, version: str) -> str:
    """
    Download name of a generated Tech Pack.

    Example:
        >>> document_filename("AB-1001", "v2 final")
        'Techpack_AB-1001_v2_final.pdf'
    """
    stem = f"Techpack_{article_code}_{version}"
    stem = SANITIZE_PATTERN.sub("_", stem).strip("_.") or "Techpack"
    return f"{stem}.pdf"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
