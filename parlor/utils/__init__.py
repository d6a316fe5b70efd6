"""Utility helpers for parlor."""

from parlor.utils.helpers import ensure_dir

__all__ = ["ensure_dir"]
