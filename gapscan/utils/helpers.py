"""
Common utility functions and helpers.
"""
from typing import Iterable, List
import re


def slugify(name: str) -> str:
    """
    Turn a concept name into an id fragment.

    Whitespace runs become a single hyphen and the result is lower-cased;
    every other character is kept as-is.

    Args:
        name: Raw concept name

    Returns:
        Slug string
    """
    return re.sub(r'\s+', '-', name).lower()


def note_title(path: str) -> str:
    """
    Derive a display title from a document path.

    Args:
        path: Relative document path, e.g. ``notes/Deep Work.md``

    Returns:
        Basename without ``.md``, e.g. ``Deep Work``
    """
    return strip_extension(path.rsplit('/', 1)[-1] or path)


def strip_extension(path: str, extension: str = ".md") -> str:
    """Remove *extension* from the end of *path* when present."""
    if path.endswith(extension):
        return path[: -len(extension)]
    return path


def generate_note_id(path: str) -> str:
    """
    Note id as written by the embedding indexer.

    A 32-bit ``hash * 31 + code unit`` rolling hash over the UTF-16 code
    units of the path without ``.md``, rendered as at least 8 hex digits of
    its absolute value.

    Args:
        path: Relative document path

    Returns:
        Hex note id, e.g. ``0a1b2c3d``
    """
    data = strip_extension(path).encode('utf-16-le')
    h = 0
    for i in range(0, len(data), 2):
        unit = data[i] | (data[i + 1] << 8)
        h = ((h << 5) - h + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), 'x').rjust(8, '0')


def normalize_folders(folders: Iterable[str]) -> List[str]:
    """
    Strip whitespace and leading slashes from folder prefixes, dropping empties.

    A trailing slash is kept so that ``Archive/`` does not match ``Archived/``.

    Args:
        folders: Raw folder names

    Returns:
        Cleaned list in input order
    """
    cleaned = []
    for folder in folders:
        value = folder.strip().lstrip('/')
        if value:
            cleaned.append(value)
    return cleaned


def is_excluded(path: str, folders: Iterable[str]) -> bool:
    """True when *path* starts with any of the (case-sensitive) folder prefixes."""
    return any(path.startswith(folder) for folder in folders)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Safely divide two numbers, returning default if denominator is zero.

    Args:
        numerator: Numerator
        denominator: Denominator
        default: Default value if division fails

    Returns:
        Result of division or default
    """
    return numerator / denominator if denominator != 0 else default
