"""
Application state tree and mod catalog.

The state is a plain nested dict addressed by key paths, persisted as JSON.
Only the slices the deployment pipeline reads and writes have helpers here:

    app.instanceId
    settings.mods.installPath.<gameId>          staging directory
    settings.mods.activator.<gameId>            configured deployment method
    settings.gameMode.discovered.<gameId>.path  game install location
    settings.profiles.activeProfileId / lastActiveProfile.<gameId>
    settings.downloads.path                     per-game download roots live below
    settings.automation.enable                  auto-enable installed mods
    persistent.mods.<gameId>.<modId>            mod catalog
    persistent.profiles.<profileId>             {gameId, modState: {<modId>: {enabled}}}
    persistent.downloads.files.<downloadId>
    persistent.deployment.needToDeploy.<gameId>
    games.<gameId>                              static game definitions (see games.py)
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable

from fs_utils import atomic_write_json

_log = logging.getLogger(__name__)

# Mods in these states are at rest and may be reconciled or removed.
SETTLED_STATES = ("downloaded", "installed")


@dataclass
class Mod:
    id: str
    game: str
    installation_path: str
    type: str = ""
    state: str = "installed"
    attributes: dict[str, Any] = field(default_factory=dict)
    rules: list[dict[str, Any]] = field(default_factory=list)
    file_overrides: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mod:
        return cls(
            id=data["id"],
            game=data.get("game", ""),
            installation_path=data.get("installationPath", data["id"]),
            type=data.get("type") or "",
            state=data.get("state", "installed"),
            attributes=dict(data.get("attributes", {})),
            rules=list(data.get("rules", [])),
            file_overrides=list(data.get("fileOverrides", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["installationPath"] = data.pop("installation_path")
        data["fileOverrides"] = data.pop("file_overrides")
        return data


def _path(key: str | Iterable[str]) -> list[str]:
    return key.split(".") if isinstance(key, str) else list(key)


class AppState:
    def __init__(self, data: dict[str, Any] | None = None, path: str | Path | None = None):
        self.data: dict[str, Any] = data if data is not None else {}
        self.path = Path(path) if path is not None else None
        if not self.get_safe(["app", "instanceId"]):
            self.set_safe(["app", "instanceId"], uuid.uuid4().hex)

    # ── Persistence ───────────────────────────────────────────────────

    @classmethod
    def load(cls, path: str | Path) -> AppState:
        path = Path(path)
        data: dict[str, Any] = {}
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                _log.warning("Could not load application state from %s: %s", path, exc)
                data = {}
        return cls(data, path)

    def save(self) -> None:
        if self.path is None:
            return
        atomic_write_json(self.path, self.data)

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self.data)

    # ── Key path access ───────────────────────────────────────────────

    def get_safe(self, key: str | Iterable[str], default: Any = None) -> Any:
        node: Any = self.data
        for part in _path(key):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set_safe(self, key: str | Iterable[str], value: Any) -> None:
        parts = _path(key)
        node = self.data
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value

    def delete_safe(self, key: str | Iterable[str]) -> None:
        parts = _path(key)
        node = self.get_safe(parts[:-1])
        if isinstance(node, dict):
            node.pop(parts[-1], None)

    # ── Selectors ─────────────────────────────────────────────────────

    @property
    def instance_id(self) -> str:
        return self.get_safe(["app", "instanceId"])

    def active_game_id(self) -> str | None:
        profile_id = self.get_safe(["settings", "profiles", "activeProfileId"])
        if profile_id is None:
            return None
        return self.get_safe(["persistent", "profiles", profile_id, "gameId"])

    def install_path(self, game_id: str) -> str | None:
        return self.get_safe(["settings", "mods", "installPath", game_id])

    def set_install_path(self, game_id: str, path: str) -> None:
        self.set_safe(["settings", "mods", "installPath", game_id], str(path))

    def activator_id(self, game_id: str) -> str | None:
        return self.get_safe(["settings", "mods", "activator", game_id])

    def set_activator(self, game_id: str, activator_id: str | None) -> None:
        self.set_safe(["settings", "mods", "activator", game_id], activator_id)

    def discovery_path(self, game_id: str) -> str | None:
        return self.get_safe(["settings", "gameMode", "discovered", game_id, "path"])

    def last_active_profile(self, game_id: str) -> str | None:
        last = self.get_safe(["settings", "profiles", "lastActiveProfile", game_id])
        if isinstance(last, dict):
            return last.get("profileId")
        return last

    def need_to_deploy(self, game_id: str) -> bool:
        return bool(self.get_safe(["persistent", "deployment", "needToDeploy", game_id], False))

    def set_deployment_necessary(self, game_id: str, required: bool) -> None:
        self.set_safe(["persistent", "deployment", "needToDeploy", game_id], required)

    # ── Mod catalog ───────────────────────────────────────────────────

    def mods(self, game_id: str) -> dict[str, Mod]:
        table = self.get_safe(["persistent", "mods", game_id], {}) or {}
        return {mod_id: Mod.from_dict(data) for mod_id, data in table.items()}

    def mod(self, game_id: str, mod_id: str) -> Mod | None:
        data = self.get_safe(["persistent", "mods", game_id, mod_id])
        return Mod.from_dict(data) if data is not None else None

    def add_mod(self, game_id: str, mod: Mod) -> None:
        mod.game = game_id
        self.set_safe(["persistent", "mods", game_id, mod.id], mod.to_dict())

    def remove_mod(self, game_id: str, mod_id: str) -> None:
        self.delete_safe(["persistent", "mods", game_id, mod_id])

    def set_mod_installation_path(self, game_id: str, mod_id: str, installation_path: str) -> None:
        self.set_safe(["persistent", "mods", game_id, mod_id, "installationPath"], installation_path)

    def is_mod_enabled(self, profile_id: str | None, mod_id: str) -> bool:
        if profile_id is None:
            return False
        return bool(
            self.get_safe(["persistent", "profiles", profile_id, "modState", mod_id, "enabled"], False)
        )

    def set_mod_enabled(self, profile_id: str | None, mod_id: str, enabled: bool) -> None:
        if profile_id is None:
            return
        self.set_safe(["persistent", "profiles", profile_id, "modState", mod_id, "enabled"], enabled)
