"""
Filesystem helpers shared by the link worker, the activation store and the
orchestrator.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import sys
import tempfile
import unicodedata
from pathlib import Path
from typing import Callable

_log = logging.getLogger(__name__)

# Written into every directory created by deployment so purging knows it may
# remove the directory once it is empty again.
DIR_TAG_NAME = (
    "__folder_managed_by_modlinker" if sys.platform == "win32" else ".__folder_managed_by_modlinker"
)
DIR_TAG_TEXT = (
    "This directory was created by modlinker deployment and will be removed "
    "during purging if it's empty"
)

Normalize = Callable[[str], str]


def ensure_dir(path: str | Path) -> list[Path]:
    """Create ``path`` and any missing parents.

    Returns the directories that were actually created, outermost first.
    An empty list means the directory already existed.
    """
    path = Path(path)
    missing: list[Path] = []
    current = path
    while not current.exists():
        missing.append(current)
        if current.parent == current:
            break
        current = current.parent
    path.mkdir(parents=True, exist_ok=True)
    return list(reversed(missing))


def atomic_write_text(path: str | Path, text: str) -> None:
    """Replace ``path`` with ``text`` so readers see either old or new content."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_write_json(path: str | Path, data: object) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def remove_path(path: str | Path) -> None:
    """Remove a file, link or directory tree. Raises FileNotFoundError if absent."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def is_within(child: str | Path, parent: str | Path) -> bool:
    try:
        Path(os.path.normcase(os.path.abspath(child))).relative_to(
            os.path.normcase(os.path.abspath(parent))
        )
        return True
    except ValueError:
        return False


def link_target(path: str | Path) -> Path:
    """Absolute target of a symlink, without requiring the target to exist."""
    target = Path(os.readlink(path))
    if not target.is_absolute():
        target = Path(path).parent / target
    return Path(os.path.normpath(target))


# ── Case handling ─────────────────────────────────────────────────────


def _is_case_sensitive(directory: Path) -> bool:
    for entry in directory.iterdir():
        swapped = entry.name.swapcase()
        if swapped == entry.name:
            continue
        return not os.path.lexists(directory / swapped)
    with tempfile.NamedTemporaryFile(prefix="CaseProbe", dir=directory) as probe:
        name = Path(probe.name).name
        return not (directory / name.swapcase()).exists()


def get_normalize_func(path: str | Path) -> Normalize:
    """Return a canonicalizer for paths on the filesystem holding ``path``.

    Separators always become ``/`` and unicode is NFC-normalized; names are
    case-folded only if the filesystem is case-insensitive.
    """
    probe_dir = Path(path)
    while not probe_dir.exists() and probe_dir.parent != probe_dir:
        probe_dir = probe_dir.parent

    try:
        case_sensitive = _is_case_sensitive(probe_dir)
    except OSError as exc:
        _log.warning("Could not probe case sensitivity of %s: %s", probe_dir, exc)
        case_sensitive = sys.platform not in ("win32", "darwin")

    def normalize(value: str) -> str:
        value = unicodedata.normalize("NFC", value.replace("\\", "/"))
        return value if case_sensitive else value.casefold()

    return normalize


# ── Managed link discovery ────────────────────────────────────────────


def find_managed_links(deploy_path: str | Path, staging_path: str | Path) -> list[Path]:
    """Symlinks under ``deploy_path`` whose target lies inside ``staging_path``.

    Regular files and links pointing anywhere else are never returned.
    """
    deploy_path = Path(deploy_path)
    found: list[Path] = []
    if not deploy_path.is_dir():
        return found
    for root, dirs, files in os.walk(deploy_path):
        for name in files + dirs:
            candidate = Path(root) / name
            if candidate.is_symlink() and is_within(link_target(candidate), staging_path):
                found.append(candidate)
    return sorted(found)


def remove_empty_tagged_dirs(deploy_path: str | Path) -> list[Path]:
    """Delete directories below ``deploy_path`` that hold nothing but the tag.

    Walks bottom-up so nested tagged directories collapse together. The deploy
    path itself is never removed.
    """
    deploy_path = Path(deploy_path)
    removed: list[Path] = []
    if not deploy_path.is_dir():
        return removed
    for root, _dirs, _files in os.walk(deploy_path, topdown=False):
        directory = Path(root)
        if directory == deploy_path or directory.is_symlink():
            continue
        names = os.listdir(directory)
        if names != [DIR_TAG_NAME]:
            continue
        os.unlink(directory / DIR_TAG_NAME)
        directory.rmdir()
        removed.append(directory)
    return removed
