"""Path helpers."""

from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create a directory (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the nanojournal data directory (~/.nanojournal)."""
    return ensure_dir(Path.home() / ".nanojournal")


def get_memory_path(workspace: Path) -> Path:
    """Get the memory directory inside a workspace."""
    return ensure_dir(workspace / "memory")
