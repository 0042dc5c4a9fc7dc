"""
Shared fixtures and helpers for the modlinker test suite.
"""

from pathlib import Path

import pytest

from app_state import AppState, Mod
from deployment_manager import DeploymentManager
from deployment_methods import MethodRegistry, UnsupportedReason
from errors import LoggingErrorReporter
from games import StaticGame
from link_client import LinkWorkerClient, LocalChannel
from staging_tag import write_staging_tag
from symlink_activator import SymlinkActivator

GAME_ID = "game1"
PROFILE_ID = "p1"


class ScriptedPrompt:
    """UserPrompt that replays canned answers and records every question."""

    def __init__(self, answers=None, directory=None):
        self.answers = list(answers or [])
        self.directory = directory
        self.asked: list[tuple[str, list[str]]] = []

    async def ask(self, kind, title, body, choices):
        self.asked.append((title, list(choices)))
        if not self.answers:
            raise AssertionError(f"unexpected question: {title}")
        answer = self.answers.pop(0)
        assert answer in choices
        return answer

    async def select_dir(self, default_path, title):
        return self.directory


class RecordingMethod:
    """Deployment method double that records its lifecycle calls."""

    def __init__(self, method_id, supported_types=("",), fail_purge=False, fail_activate=False):
        self.id = method_id
        self.name = method_id
        self.description = "test method"
        self.supported_types = set(supported_types)
        self.fail_purge = fail_purge
        self.fail_activate = fail_activate
        self.calls: list[str] = []

    def is_supported(self, game_id, mod_type):
        if mod_type in self.supported_types:
            return None
        return UnsupportedReason(f"mod type {mod_type!r} not supported", mod_type)

    async def pre_purge(self, staging_path):
        self.calls.append("pre_purge")

    async def purge(self, staging_path, deploy_path):
        self.calls.append("purge")
        if self.fail_purge:
            raise OSError("purge failed")

    async def post_purge(self, staging_path):
        self.calls.append("post_purge")

    async def prepare(self, deploy_path, clean, last_activation, normalize):
        self.calls.append("prepare")

    async def activate(self, deploy_path, staged_mod_path, source_name, sub_dir, mod_id):
        self.calls.append("activate")
        if self.fail_activate:
            raise RuntimeError("activation failed")

    async def deactivate(self, deploy_path, staged_mod_path, source_name, sub_dir):
        self.calls.append("deactivate")

    async def finalize(self, game_id, deploy_path, staging_path):
        self.calls.append("finalize")
        return []

    async def cancel(self, game_id, deploy_path, staging_path):
        self.calls.append("cancel")


def make_activator() -> SymlinkActivator:
    """Symlink activator talking to an in-process worker without retry delays."""
    return SymlinkActivator(lambda: LinkWorkerClient(lambda: LocalChannel(retry_delay=0)))


def add_staged_mod(state, staging: Path, mod_id, installation_path, files, enabled=True, mod_state="installed"):
    mod_dir = staging / installation_path
    for rel, text in files.items():
        target = mod_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    mod_dir.mkdir(parents=True, exist_ok=True)
    state.add_mod(GAME_ID, Mod(id=mod_id, game=GAME_ID, installation_path=installation_path, state=mod_state))
    state.set_mod_enabled(PROFILE_ID, mod_id, enabled)
    return mod_dir


def make_manager(state, prompt, methods=None, **kwargs) -> DeploymentManager:
    games = {GAME_ID: StaticGame(GAME_ID, "Game One", {"": "Data"})}
    registry = MethodRegistry(methods if methods is not None else [make_activator()])
    return DeploymentManager(state, games, registry, prompt, reporter=LoggingErrorReporter(), **kwargs)


@pytest.fixture
def dirs(tmp_path):
    """Return (staging_dir, game_dir) with the game's Data folder in place."""
    staging = tmp_path / "staging"
    game = tmp_path / "game"
    staging.mkdir()
    (game / "Data").mkdir(parents=True)
    return staging, game


@pytest.fixture
def state(tmp_path, dirs):
    staging, game = dirs
    st = AppState(path=tmp_path / "state.json")
    st.set_safe(["settings", "profiles", "activeProfileId"], PROFILE_ID)
    st.set_safe(["persistent", "profiles", PROFILE_ID], {"gameId": GAME_ID, "modState": {}})
    st.set_install_path(GAME_ID, str(staging))
    st.set_safe(["settings", "gameMode", "discovered", GAME_ID, "path"], str(game))
    write_staging_tag(staging, st.instance_id, GAME_ID)
    return st


@pytest.fixture
def prompt():
    return ScriptedPrompt()


@pytest.fixture
def manager(state, prompt):
    state.set_activator(GAME_ID, SymlinkActivator.id)
    mgr = make_manager(state, prompt)
    mgr.register()
    return mgr
