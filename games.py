"""
Game definitions read from the application state.

Working out where a real game wants its mods is not this package's job; the
state carries the answer per game:

    "games": {
        "skyrimse": {
            "name": "Skyrim Special Edition",
            "modPaths": {"": "Data", "enb": "."},
            "mergeMods": true
        }
    }
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from app_state import AppState


@dataclass
class StaticGame:
    id: str
    name: str
    mod_paths: dict[str, str] = field(default_factory=lambda: {"": "."})
    merge_mods: bool = True

    def get_mod_paths(self, discovery_path: str) -> dict[str, str]:
        return {
            mod_type: os.path.normpath(os.path.join(discovery_path, rel))
            for mod_type, rel in self.mod_paths.items()
        }


def load_games(state: AppState) -> dict[str, StaticGame]:
    games: dict[str, StaticGame] = {}
    for game_id, data in (state.get_safe("games", {}) or {}).items():
        games[game_id] = StaticGame(
            id=game_id,
            name=data.get("name", game_id),
            mod_paths=dict(data.get("modPaths", {"": "."})),
            merge_mods=bool(data.get("mergeMods", True)),
        )
    return games
