"""Store keys: paths relative to the root of the walked tree."""

from __future__ import annotations

from pathlib import Path, PurePath


def relative_key(root: Path | str, path: Path | str) -> str:
    """Return *path* relative to *root* as a POSIX string.

    Keys stay stable when the tree is moved or walked from another working
    directory, and are identical on every platform.

    Raises
    ------
    ValueError
        If *path* is not located under *root*.
    """
    root_path = PurePath(root)
    child = PurePath(path)
    try:
        rel = child.relative_to(root_path)
    except ValueError:
        raise ValueError(f"{str(child)!r} is not under root {str(root_path)!r}") from None
    if not rel.parts:
        raise ValueError(f"{str(child)!r} is the root itself, not a file under it")
    return rel.as_posix()
