"""Small filesystem helpers."""

from pathlib import Path


def ensure_dir(path: Path | str) -> Path:
    """Create the directory if needed and return it as a Path."""
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p
