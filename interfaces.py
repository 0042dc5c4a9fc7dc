"""
Boundaries to collaborators that live outside this package: game path
conventions, the user prompt facility and the mod installer.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from app_state import Mod


@runtime_checkable
class Game(Protocol):
    id: str
    name: str
    merge_mods: bool

    def get_mod_paths(self, discovery_path: str) -> dict[str, str]:
        """Map each mod type to the directory it deploys into."""
        ...


class UserPrompt(Protocol):
    async def ask(self, kind: str, title: str, body: str, choices: list[str]) -> str:
        """Show a question and return the label of the chosen button."""
        ...

    async def select_dir(self, default_path: str, title: str) -> Optional[str]:
        ...


class InstallManager(Protocol):
    def install(
        self,
        download_id: str,
        archive_path: str,
        game_id: str,
        info: dict[str, Any],
        enable: bool,
        callback: Optional[Callable[[Optional[BaseException], Optional[str]], None]],
    ) -> None: ...


def gen_sub_dir_func(game: Game) -> Callable[[Mod], str]:
    """Subdirectory of the deploy path a mod's files go into.

    Games that merge mods get everything at the deploy root; otherwise each
    mod is kept in a directory named after its id.
    """
    if game.merge_mods:
        return lambda mod: ""
    return lambda mod: mod.id
