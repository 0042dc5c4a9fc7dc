"""
modlinker - Deployment Orchestrator

Reacts to application events (game activated, mod added or removed, paths
or mods changed, download ready to install) and drives the configured
deployment method through its purge/deploy cycle. All cycles touching one
game are serialized through a per-game work queue; every failure passes
through one error reporting surface with its report eligibility decided
here.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

import activation_store
from app_state import SETTLED_STATES, AppState, Mod
from deployment_methods import DeploymentMethod, MethodRegistry
from errors import (
    EXPECTED_FS_CODES,
    ErrorReporter,
    LoggingErrorReporter,
    PartialDeployment,
    ProcessCanceled,
    TemporaryError,
    UserCanceled,
    allow_report,
    error_code,
)
from events import EventBus
from fs_utils import get_normalize_func, remove_path
from interfaces import Game, InstallManager, UserPrompt, gen_sub_dir_func
from refresh_mods import refresh_mods, write_mod_marker
from staging_tag import validate_staging_tag, write_staging_tag
from work_queue import KeyedWorkQueue

_log = logging.getLogger(__name__)

MISSING_STAGING_TEXT = (
    "The staging folder for {game} could not be found:\n{path}\n\n"
    "If it is on a removable drive, reconnect it and choose Quit. "
    "Reinitialize removes all deployed links and starts with an empty "
    "staging folder, all installed mods will be lost. Browse lets you pick "
    "the folder's new location."
)
MISSING_FILES_TEXT = (
    "The files of this mod were not found where they were expected. You can "
    "ignore this and continue removing the mod or deploy all mods first so "
    "the game directory is brought up to date."
)
METHOD_UNAVAILABLE_TEXT = (
    "The deployment method used with this game ({method}) is no longer "
    "available. The extension providing it may have been removed or fails to "
    "load. Files deployed with it can't be cleaned up until it is restored, "
    "so restore it, purge, and then switch to a different method."
)
METHOD_UNSUPPORTED_TEXT = (
    "The deployment method you had configured ({method}) is no longer "
    "applicable. Resolve the problem below or choose a different deployment "
    "method.\n\n{reason}"
)


class DeploymentManager:
    """
    Deployment controller for all managed games.

    Workflow:
        1. register() to subscribe to the event bus
        2. on_game_mode_activated() whenever a game becomes active
        3. deploy_mods() / purge_mods() / on_remove_mod() to change what is deployed
    """

    def __init__(
        self,
        state: AppState,
        games: dict[str, Game],
        registry: MethodRegistry,
        prompt: UserPrompt,
        reporter: Optional[ErrorReporter] = None,
        events: Optional[EventBus] = None,
        install_manager: Optional[InstallManager] = None,
        staging_root: str | Path | None = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.state = state
        self.games = games
        self.registry = registry
        self.prompt = prompt
        self.reporter = reporter or LoggingErrorReporter()
        self.events = events or EventBus()
        self.install_manager = install_manager
        self.staging_root = Path(staging_root) if staging_root is not None else None
        self.queue = KeyedWorkQueue()
        self._log_cb = log_callback

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str, *args: Any) -> None:
        _log.info(msg, *args)
        if self._log_cb is not None:
            self._log_cb(msg % args if args else msg)

    def register(self) -> None:
        for event, handler in (
            ("game-mode-activated", self.on_game_mode_activated),
            ("remove-mod", self.on_remove_mod),
            ("add-mod", self.on_add_mod),
            ("paths-changed", self.on_paths_changed),
            ("mods-changed", self.on_mods_changed),
            ("start-install-download", self.on_start_install_download),
            ("deploy-mods", self.on_deploy_mods),
            ("purge-mods", self.on_purge_mods),
        ):
            self.events.on(event, handler, owner="deployment")

    # ── Lookups ───────────────────────────────────────────────────────

    def game(self, game_id: str) -> Game:
        game = self.games.get(game_id)
        if game is None:
            raise ProcessCanceled(f"Unknown game {game_id}")
        return game

    def is_discovered(self, game_id: str) -> bool:
        return self.state.discovery_path(game_id) is not None

    def deploy_paths(self, game_id: str) -> dict[str, str]:
        discovery = self.state.discovery_path(game_id)
        if discovery is None:
            raise ProcessCanceled(f"Game {game_id} has not been discovered")
        return self.game(game_id).get_mod_paths(discovery)

    def staging_path(self, game_id: str) -> Path:
        configured = self.state.install_path(game_id)
        if configured is None and self.staging_root is not None:
            configured = str(self.staging_root / game_id)
            self.state.set_install_path(game_id, configured)
        if configured is None:
            raise ProcessCanceled(f"No staging folder configured for {game_id}")
        return Path(configured)

    def profile_for(self, game_id: str) -> Optional[str]:
        active = self.state.get_safe(["settings", "profiles", "activeProfileId"])
        if active is not None and self.state.get_safe(["persistent", "profiles", active, "gameId"]) == game_id:
            return active
        return self.state.last_active_profile(game_id)

    def current_method(self, game_id: str) -> Optional[DeploymentMethod]:
        return self.registry.current(self.state, game_id, list(self.deploy_paths(game_id)))

    def _require_method(self, game_id: str) -> DeploymentMethod:
        method = self.current_method(game_id)
        if method is None:
            raise ProcessCanceled(f"No deployment method configured for {game_id}")
        return method

    def _report(self, title: str, err: BaseException) -> None:
        if isinstance(err, UserCanceled):
            _log.info("%s: %s", title, err)
        elif isinstance(err, (ProcessCanceled, TemporaryError)):
            self.reporter.show_error(title, str(err), allow_report=False)
        else:
            self.reporter.show_error(title, err, allow_report=allow_report(err))

    # ── Game activation ───────────────────────────────────────────────

    async def on_game_mode_activated(self, new_game: str) -> None:
        try:
            staging = await self._ensure_staging_dir(new_game)
            if self.is_discovered(new_game):
                await self._check_activator(new_game)
            write_staging_tag(staging, self.state.instance_id, new_game)
            self.reconcile(new_game, staging)
            self.state.save()
            await self.events.emit("mods-refreshed", new_game)
        except UserCanceled:
            _log.info("Activation of %s canceled", new_game)
        except ProcessCanceled as err:
            _log.warning("Activation of %s canceled: %s", new_game, err)
        except Exception as err:
            self.reporter.show_error(
                "Failed to activate game", err, allow_report=error_code(err) != "ENOENT"
            )

    async def _ensure_staging_dir(self, game_id: str) -> Path:
        staging = self.staging_path(game_id)
        if staging.is_dir():
            await validate_staging_tag(staging, self.state.instance_id, self.prompt)
            return staging
        if not self.state.mods(game_id):
            # nothing was ever installed here, an empty folder is expected
            staging.mkdir(parents=True, exist_ok=True)
            self.log("Created staging folder %s", staging)
            return staging

        game_name = getattr(self.games.get(game_id), "name", game_id)
        while True:
            choice = await self.prompt.ask(
                "error",
                "Staging folder missing",
                MISSING_STAGING_TEXT.format(game=game_name, path=staging),
                ["Quit", "Reinitialize", "Browse..."],
            )
            if choice == "Quit":
                raise UserCanceled("staging folder missing")
            if choice == "Reinitialize":
                await self._reinitialize_staging(game_id, staging)
                return staging
            selected = await self.prompt.select_dir(str(staging.parent), "Select staging folder")
            if not selected or not Path(selected).is_dir():
                continue
            await validate_staging_tag(selected, self.state.instance_id, self.prompt)
            self.state.set_install_path(game_id, str(selected))
            self.log("Staging folder for %s moved to %s", game_id, selected)
            return Path(selected)

    async def _reinitialize_staging(self, game_id: str, staging: Path) -> None:
        if self.is_discovered(game_id):
            await self.queue.run(
                game_id, asyncio.to_thread, activation_store.fallback_purge, self.deploy_paths(game_id), staging
            )
        staging.mkdir(parents=True, exist_ok=True)
        self.log("Reinitialized staging folder %s", staging)

    async def _check_activator(self, game_id: str) -> Optional[DeploymentMethod]:
        mod_types = list(self.deploy_paths(game_id))
        current = self.registry.current(self.state, game_id, mod_types)
        if current is not None:
            return current

        old_id = self.state.activator_id(game_id)
        if old_id is not None:
            old = self.registry.get(old_id)
            if old is None:
                self.reporter.show_error(
                    "Deployment method no longer available",
                    METHOD_UNAVAILABLE_TEXT.format(method=old_id),
                    allow_report=False,
                )
            else:
                reason = self.registry.all_types_supported(old, game_id, mod_types)
                self.reporter.show_error(
                    "Deployment method no longer supported",
                    METHOD_UNSUPPORTED_TEXT.format(
                        method=old.name, reason=reason.description if reason is not None else ""
                    ),
                    allow_report=False,
                )
                self.log("Purging mods deployed with %s", old.name)
                try:
                    await self.queue.run(game_id, self._purge_with, game_id, old)
                except Exception as err:
                    _log.warning("Failed to purge with %s: %s", old_id, err)

        supported = self.registry.supported(game_id, mod_types)
        if supported:
            replacement = supported[0]
            self.state.set_activator(game_id, replacement.id)
            self.log("Using deployment method %s for %s", replacement.name, game_id)
            return replacement

        if old_id is not None:
            self.state.set_activator(game_id, None)
        reasons = []
        for method in self.registry.all():
            reason = self.registry.all_types_supported(method, game_id, mod_types)
            if reason is not None:
                reasons.append(f"{method.name}: {reason.description}")
        self.reporter.show_error(
            "No deployment method available",
            "\n".join(reasons) or "No deployment methods are registered",
            allow_report=False,
        )
        return None

    # ── Catalog reconciliation ────────────────────────────────────────

    def reconcile(self, game_id: str, staging: Path) -> None:
        result = refresh_mods(game_id, staging, self.state.mods(game_id))
        for mod_id in result.removed:
            self.state.remove_mod(game_id, mod_id)
            self.log("Removed mod %s, its files are gone", mod_id)
        for mod_id, old_path, new_path in result.renamed:
            self.state.set_mod_installation_path(game_id, mod_id, new_path)
            self.log("Mod %s moved from %s to %s", mod_id, old_path, new_path)
        for mod in result.added:
            self.state.add_mod(game_id, mod)
            try:
                write_mod_marker(staging / mod.installation_path, mod.id)
            except OSError as err:
                _log.warning("Could not mark %s: %s", mod.installation_path, err)
            self.log("Added mod %s found in staging folder", mod.id)
        if result.changed:
            self.state.set_deployment_necessary(game_id, True)

    async def on_paths_changed(self, previous: dict[str, str], current: dict[str, str]) -> None:
        game_id = self.state.active_game_id()
        if game_id is None or previous.get(game_id) == current.get(game_id):
            return
        try:
            staging = self.staging_path(game_id)
            if not staging.is_dir():
                raise ProcessCanceled(f"Staging folder {staging} does not exist")
            self.reconcile(game_id, staging)
            self.state.save()
            await self.events.emit("mods-refreshed", game_id)
        except Exception as err:
            self._report("Failed to read mods", err)

    def on_mods_changed(self, previous: dict[str, Any], current: dict[str, Any]) -> None:
        game_id = self.state.active_game_id()
        if game_id is None or self.state.need_to_deploy(game_id):
            return
        before = (previous or {}).get(game_id, {}) or {}
        after = (current or {}).get(game_id, {}) or {}
        for mod_id, mod in after.items():
            old = before.get(mod_id)
            if old is None:
                continue
            if old.get("rules") != mod.get("rules") or old.get("fileOverrides") != mod.get("fileOverrides"):
                _log.debug("Conflict rules of %s changed", mod_id)
                self.state.set_deployment_necessary(game_id, True)
                return

    # ── Adding and removing mods ──────────────────────────────────────

    async def on_add_mod(
        self,
        game_id: str,
        mod: Mod,
        callback: Optional[Callable[[Optional[BaseException]], None]] = None,
    ) -> None:
        try:
            staging = self.staging_path(game_id)
            if not staging.is_dir():
                staging.mkdir(parents=True)
                write_staging_tag(staging, self.state.instance_id, game_id)
            mod_dir = staging / mod.installation_path
            mod_dir.mkdir(parents=True, exist_ok=True)
            write_mod_marker(mod_dir, mod.id)
            self.state.add_mod(game_id, mod)
            self.state.save()
            self.log("Added mod %s to %s", mod.id, game_id)
        except Exception as err:
            if callback is not None:
                callback(err)
            else:
                self._report("Failed to add mod", err)
            return
        if callback is not None:
            callback(None)

    async def on_remove_mod(
        self,
        game_id: str,
        mod_id: str,
        callback: Optional[Callable[[Optional[BaseException]], None]] = None,
    ) -> None:
        try:
            await self.remove_mod(game_id, mod_id)
        except Exception as err:
            if callback is not None:
                callback(err)
            else:
                self._report("Failed to remove mod", err)
            return
        if callback is not None:
            callback(None)

    async def remove_mod(self, game_id: str, mod_id: str) -> None:
        mod = self.state.mod(game_id, mod_id)
        if mod is None:
            raise ProcessCanceled(f"Mod {mod_id} is not installed")
        if mod.state not in SETTLED_STATES:
            raise ProcessCanceled("Can't delete mod during download or install")

        self.log("Removing mod %s", mod_id)
        self.state.set_mod_enabled(self.profile_for(game_id), mod_id, False)
        self.state.save()

        staging = self.staging_path(game_id)
        method = self.current_method(game_id) if self.is_discovered(game_id) else None
        if method is None:
            _log.info("No deployment for %s, skipping undeploy of %s", game_id, mod_id)
        else:
            try:
                await self.queue.run(game_id, self._undeploy, game_id, method, staging, mod)
            except Exception as err:
                if error_code(err) not in EXPECTED_FS_CODES:
                    raise
                choice = await self.prompt.ask(
                    "question", "Mod files missing", MISSING_FILES_TEXT, ["Ignore", "Deploy"]
                )
                if choice == "Deploy":
                    await self.deploy_mods(game_id)

        await self._delete_staged(staging / mod.installation_path)
        self.state.remove_mod(game_id, mod_id)
        self.state.save()
        self.log("Removed mod %s", mod_id)

    async def undeploy_mod(self, game_id: str, mod_id: str) -> None:
        """Remove one mod's links without touching the catalog or profile."""
        mod = self.state.mod(game_id, mod_id)
        if mod is None:
            raise ProcessCanceled(f"Mod {mod_id} is not installed")
        method = self._require_method(game_id)
        await self.queue.run(game_id, self._undeploy, game_id, method, self.staging_path(game_id), mod)

    async def _delete_staged(self, mod_dir: Path) -> None:
        for attempt in range(2):
            try:
                await asyncio.to_thread(remove_path, mod_dir)
                return
            except FileNotFoundError:
                return
            except OSError as err:
                if error_code(err) != "ENOTEMPTY" or attempt:
                    raise
                # something wrote into the directory while it was removed
                _log.debug("Retrying removal of %s", mod_dir)

    # ── Download installation ─────────────────────────────────────────

    def on_start_install_download(
        self,
        download_id: str,
        allow_auto_enable: bool = True,
        callback: Optional[Callable[[Optional[BaseException], Optional[str]], None]] = None,
    ) -> None:
        download = self.state.get_safe(["persistent", "downloads", "files", download_id])
        if download is None:
            self.reporter.show_error("Unknown Download", f"No download with id {download_id}", allow_report=False)
            return
        if not download.get("localPath"):
            self.reporter.show_error(
                "Download invalid",
                "Sorry, the meta data for this download is incomplete. Please try downloading it again.",
                allow_report=False,
            )
            asyncio.ensure_future(self.events.emit("refresh-downloads", download.get("game")))
            return

        games = download.get("game") or []
        game_id = games[0] if isinstance(games, list) and games else games or self.state.active_game_id()
        root = self.state.get_safe(["settings", "downloads", "path"])
        if not root or not game_id:
            self.reporter.show_error(
                "Unknown Download directory",
                f"Could not determine the download folder for {download_id}",
                allow_report=False,
            )
            return
        if self.install_manager is None:
            _log.warning("No installer attached, can't install %s", download_id)
            return

        enable = allow_auto_enable and bool(self.state.get_safe(["settings", "automation", "enable"], False))
        archive = os.path.join(root, game_id, download["localPath"])
        self.log("Installing %s for %s", archive, game_id)
        self.install_manager.install(
            download_id, archive, game_id, {"download": download}, enable, callback
        )

    # ── Deployment ────────────────────────────────────────────────────

    async def deploy_mods(self, game_id: Optional[str] = None) -> None:
        game_id = game_id or self.state.active_game_id()
        if game_id is None:
            raise ProcessCanceled("No game active")
        staging = self.staging_path(game_id)
        if not staging.is_dir():
            raise ProcessCanceled(f"Staging folder {staging} does not exist")
        await validate_staging_tag(staging, self.state.instance_id, self.prompt)
        method = self._require_method(game_id)

        await self.queue.run(game_id, self._deploy_all, game_id, method, staging)
        self.state.set_deployment_necessary(game_id, False)
        self.state.save()
        await self.events.emit("did-deploy", game_id)

    async def purge_mods(self, game_id: Optional[str] = None) -> None:
        game_id = game_id or self.state.active_game_id()
        if game_id is None:
            raise ProcessCanceled("No game active")
        method = self._require_method(game_id)
        await self.queue.run(game_id, self._purge_with, game_id, method)
        self.state.set_deployment_necessary(game_id, True)
        self.state.save()
        await self.events.emit("did-purge", game_id)

    async def on_deploy_mods(self, game_id: Optional[str] = None) -> None:
        try:
            await self.deploy_mods(game_id)
        except Exception as err:
            self._report("Failed to deploy mods", err)

    async def on_purge_mods(self, game_id: Optional[str] = None) -> None:
        try:
            await self.purge_mods(game_id)
        except Exception as err:
            self._report("Failed to purge mods", err)

    def _enabled_mods(self, game_id: str) -> list[Mod]:
        profile_id = self.profile_for(game_id)
        mods = [
            mod for mod in self.state.mods(game_id).values()
            if mod.state == "installed" and self.state.is_mod_enabled(profile_id, mod.id)
        ]
        return sorted(mods, key=lambda mod: mod.id)

    async def _last_activation(
        self, game_id: str, mod_type: str, deploy_path: str, staging: Path, method: DeploymentMethod
    ) -> Optional[activation_store.ActivationManifest]:
        last = activation_store.load(mod_type, deploy_path, staging, method, self.state.instance_id)
        if last is None:
            return None
        stale = activation_store.stale_entries(last, deploy_path)
        if not stale:
            return last
        self.log(
            "%d deployed file(s) in %s went missing, cleaning up without the manifest",
            len(stale), deploy_path,
        )
        await asyncio.to_thread(activation_store.fallback_purge, {mod_type: deploy_path}, staging)
        self.state.set_deployment_necessary(game_id, True)
        return None

    async def _deploy_all(self, game_id: str, method: DeploymentMethod, staging: Path) -> None:
        sub_dir = gen_sub_dir_func(self.game(game_id))
        mods = self._enabled_mods(game_id)
        deploy_paths = self.deploy_paths(game_id)
        for mod in mods:
            if mod.type not in deploy_paths:
                _log.warning("Mod %s has unsupported type %r, not deployed", mod.id, mod.type)

        for mod_type, deploy_path in deploy_paths.items():
            last = await self._last_activation(game_id, mod_type, deploy_path, staging, method)
            await method.prepare(deploy_path, True, last, get_normalize_func(deploy_path))
            try:
                for mod in mods:
                    if mod.type != mod_type:
                        continue
                    await method.activate(
                        deploy_path, str(staging / mod.installation_path), mod.installation_path, sub_dir(mod), mod.id
                    )
            except BaseException:
                await self._cancel(method, game_id, deploy_path, staging)
                raise
            count = await self._finalize(method, game_id, mod_type, deploy_path, staging)
            self.log("Deployed %d file(s) to %s", count, deploy_path)

    async def _undeploy(self, game_id: str, method: DeploymentMethod, staging: Path, mod: Mod) -> None:
        deploy_paths = self.deploy_paths(game_id)
        deploy_path = deploy_paths.get(mod.type)
        if deploy_path is None:
            # mods of this type are never deployed, so there is nothing to remove
            _log.info("Mod type %r of %s isn't deployed for %s", mod.type, mod.id, game_id)
            return
        sub_dir = gen_sub_dir_func(self.game(game_id))

        last = await self._last_activation(game_id, mod.type, deploy_path, staging, method)
        await method.prepare(deploy_path, False, last, get_normalize_func(deploy_path))
        try:
            await method.deactivate(
                deploy_path, str(staging / mod.installation_path), mod.installation_path, sub_dir(mod)
            )
        except BaseException:
            await self._cancel(method, game_id, deploy_path, staging)
            raise
        await self._finalize(method, game_id, mod.type, deploy_path, staging)
        self.log("Undeployed mod %s", mod.id)

    async def _finalize(
        self, method: DeploymentMethod, game_id: str, mod_type: str, deploy_path: str, staging: Path
    ) -> int:
        try:
            entries = await method.finalize(game_id, deploy_path, str(staging))
        except PartialDeployment as err:
            activation_store.save(
                mod_type, self.state.instance_id, deploy_path, staging, err.entries, method.id, game_id
            )
            self.state.set_deployment_necessary(game_id, True)
            for destination, failure in err.failures:
                _log.warning("Failed to deploy %s: %s", destination, failure)
            if err.transient:
                raise TemporaryError(str(err)) from err
            raise
        activation_store.save(
            mod_type, self.state.instance_id, deploy_path, staging, entries, method.id, game_id
        )
        return len(entries)

    async def _cancel(self, method: DeploymentMethod, game_id: str, deploy_path: str, staging: Path) -> None:
        try:
            await method.cancel(game_id, deploy_path, str(staging))
        except Exception as err:
            _log.warning("Failed to cancel deployment to %s: %s", deploy_path, err)

    async def _purge_with(self, game_id: str, method: DeploymentMethod) -> None:
        staging = self.staging_path(game_id)
        deploy_paths = self.deploy_paths(game_id)
        await method.pre_purge(str(staging))
        try:
            for mod_type, deploy_path in deploy_paths.items():
                await method.purge(str(staging), deploy_path)
                if Path(deploy_path).is_dir():
                    activation_store.save(
                        mod_type, self.state.instance_id, deploy_path, staging, [], method.id, game_id
                    )
        finally:
            await method.post_purge(str(staging))
        self.log("Purged %s", game_id)
