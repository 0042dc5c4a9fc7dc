"""
Reconciliation of the mod catalog with the staging folder.

Subdirectories of the staging folder are the truth about which mods exist.
A directory nobody knows about becomes a new mod named after it, unless it
holds an identity marker naming a known mod whose own directory is gone;
then the known mod was renamed and only its installation path changes.

    <staging>/<mod dir>/.modlinker_mod.json
    {"id": "m1"}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from app_state import SETTLED_STATES, Mod
from fs_utils import atomic_write_text

MOD_MARKER_NAME = ".modlinker_mod.json"

_log = logging.getLogger(__name__)


class ModMarker(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


def read_mod_marker(mod_dir: str | Path) -> ModMarker | None:
    try:
        return ModMarker.model_validate_json((Path(mod_dir) / MOD_MARKER_NAME).read_text(encoding="utf-8"))
    except (OSError, ValidationError):
        return None


def write_mod_marker(mod_dir: str | Path, mod_id: str) -> None:
    atomic_write_text(Path(mod_dir) / MOD_MARKER_NAME, ModMarker(id=mod_id).model_dump_json())


@dataclass
class RefreshResult:
    added: list[Mod] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    # (mod id, old installation path, new installation path)
    renamed: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.renamed)


def staged_mod_dirs(staging_path: str | Path) -> list[str]:
    staging_path = Path(staging_path)
    if not staging_path.is_dir():
        return []
    return sorted(
        entry.name for entry in staging_path.iterdir()
        if entry.is_dir() and not entry.name.startswith(".")
    )


def refresh_mods(game_id: str, staging_path: str | Path, known: dict[str, Mod]) -> RefreshResult:
    """Work out how ``known`` must change to match ``staging_path``.

    Mods that are mid-download or mid-install are neither removed nor used
    as rename targets.
    """
    result = RefreshResult()
    on_disk = staged_mod_dirs(staging_path)
    on_disk_set = set(on_disk)
    by_path = {mod.installation_path: mod for mod in known.values()}

    missing = {
        mod.id: mod for mod in known.values()
        if mod.installation_path not in on_disk_set and mod.state in SETTLED_STATES
    }

    for name in on_disk:
        if name in by_path:
            continue
        marker = read_mod_marker(Path(staging_path) / name)
        if marker is not None and marker.id in missing:
            mod = missing.pop(marker.id)
            result.renamed.append((mod.id, mod.installation_path, name))
            continue
        if name in known and name not in missing:
            _log.warning("Directory %s clashes with mod id %s, leaving it alone", name, name)
            continue
        result.added.append(Mod(id=name, game=game_id, installation_path=name, state="installed"))

    result.removed = sorted(missing)
    return result
