"""
Symlink deployment method.

Every staged file becomes a symbolic link in the deploy directory. The
manager never touches the deploy directory itself: link creation and
removal are delegated to the link worker, which may run with different
privileges and retries transient failures.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from activation_store import ActivationEntry, ActivationManifest
from deployment_methods import UnsupportedReason
from errors import PartialDeployment, ProcessCanceled, coded_error, error_code
from fs_utils import DIR_TAG_NAME, Normalize, find_managed_links, remove_empty_tagged_dirs
from link_client import LinkWorkerClient
from refresh_mods import MOD_MARKER_NAME

_log = logging.getLogger(__name__)

# Files in a staged mod directory that belong to the manager, not the mod.
IGNORED_FILES = frozenset({MOD_MARKER_NAME, DIR_TAG_NAME})


@functools.lru_cache(maxsize=1)
def _can_create_symlinks() -> bool:
    with tempfile.TemporaryDirectory() as tmpdir:
        target = Path(tmpdir) / "target"
        target.write_text("", encoding="utf-8")
        try:
            os.symlink(target, Path(tmpdir) / "link")
        except (OSError, NotImplementedError):
            return False
    return True


def _iter_staged_files(base: Path) -> list[str]:
    files: list[str] = []
    for root, _dirs, names in os.walk(base):
        for name in names:
            if name in IGNORED_FILES:
                continue
            files.append((Path(root) / name).relative_to(base).as_posix())
    return sorted(files)


def _cycle_key(path: str | Path) -> str:
    return os.path.normcase(os.path.abspath(path))


@dataclass
class _DeploymentContext:
    deploy_path: Path
    normalize: Normalize
    client: LinkWorkerClient
    previous: dict[str, ActivationEntry] = field(default_factory=dict)
    new: dict[str, ActivationEntry] = field(default_factory=dict)


class SymlinkActivator:
    """
    One instance serves every game. A deployment cycle is identified by its
    deploy path and a purge by its staging path, so cycles of different games
    may run at the same time, each with its own worker connection.
    """

    id = "symlink_activator"
    name = "Symlink Deployment"
    description = (
        "Deploys mods by placing symbolic links in the game directory that point "
        "to the files in the staging folder."
    )

    def __init__(self, client_factory: Callable[[], LinkWorkerClient] = LinkWorkerClient):
        self._client_factory = client_factory
        self._cycles: dict[str, _DeploymentContext] = {}
        self._purges: dict[str, LinkWorkerClient] = {}

    def is_supported(self, game_id: str, mod_type: str) -> Optional[UnsupportedReason]:
        if not hasattr(os, "symlink"):
            return UnsupportedReason("Symbolic links are not available on this platform", mod_type)
        if sys.platform == "win32" and not _can_create_symlinks():
            return UnsupportedReason(
                "Creating symbolic links requires administrator rights or developer mode",
                mod_type,
            )
        return None

    # ── Worker connection ─────────────────────────────────────────────

    async def _start_client(self) -> LinkWorkerClient:
        client = self._client_factory()
        await client.start()
        return client

    def _require_context(self, deploy_path: str) -> _DeploymentContext:
        context = self._cycles.get(_cycle_key(deploy_path))
        if context is None:
            raise ProcessCanceled(f"deployment to {deploy_path} was not prepared")
        return context

    # ── Purge ─────────────────────────────────────────────────────────

    async def pre_purge(self, staging_path: str) -> None:
        key = _cycle_key(staging_path)
        if key not in self._purges:
            self._purges[key] = await self._start_client()

    async def purge(self, staging_path: str, deploy_path: str) -> None:
        client = self._purges.get(_cycle_key(staging_path))
        if client is None:
            client = await self._start_client()
            try:
                await self._purge_links(client, staging_path, deploy_path)
            finally:
                await client.stop()
        else:
            await self._purge_links(client, staging_path, deploy_path)

    async def _purge_links(self, client: LinkWorkerClient, staging_path: str, deploy_path: str) -> None:
        links = find_managed_links(deploy_path, staging_path)
        if links:
            _log.info("Purging %d link(s) from %s", len(links), deploy_path)
        results = await asyncio.gather(
            *(client.remove_link(str(link)) for link in links),
            return_exceptions=True,
        )
        errors = [
            outcome for outcome in results
            if isinstance(outcome, BaseException) and error_code(outcome) != "ENOENT"
        ]
        for directory in remove_empty_tagged_dirs(deploy_path):
            _log.debug("Removed empty directory %s", directory)
        if errors:
            _log.warning("%d link(s) in %s could not be removed", len(errors), deploy_path)
            raise errors[0]

    async def post_purge(self, staging_path: str) -> None:
        client = self._purges.pop(_cycle_key(staging_path), None)
        if client is not None:
            await client.stop()

    # ── Deployment cycle ──────────────────────────────────────────────

    async def prepare(
        self,
        deploy_path: str,
        clean: bool,
        last_activation: Optional[ActivationManifest],
        normalize: Normalize,
    ) -> None:
        key = _cycle_key(deploy_path)
        if key in self._cycles:
            raise ProcessCanceled(f"a deployment to {deploy_path} is already in progress")
        previous = {
            normalize(entry.destination): entry
            for entry in (last_activation.files if last_activation is not None else [])
        }
        client = await self._start_client()
        self._cycles[key] = _DeploymentContext(
            deploy_path=Path(deploy_path),
            normalize=normalize,
            client=client,
            previous=previous,
            new={} if clean else dict(previous),
        )

    async def activate(
        self, deploy_path: str, staged_mod_path: str, source_name: str, sub_dir: str, mod_id: str
    ) -> None:
        context = self._require_context(deploy_path)
        base = Path(staged_mod_path)
        if not base.is_dir():
            raise coded_error("ENOENT", f"Mod directory not found: {base}")
        source_name = source_name.replace("\\", "/").strip("/")
        for rel in _iter_staged_files(base):
            destination = f"{sub_dir.strip('/')}/{rel}" if sub_dir else rel
            context.new[context.normalize(destination)] = ActivationEntry(
                source=f"{source_name}/{rel}",
                destination=destination,
                mod_id=mod_id,
            )

    async def deactivate(self, deploy_path: str, staged_mod_path: str, source_name: str, sub_dir: str) -> None:
        context = self._require_context(deploy_path)
        base = Path(staged_mod_path)
        if not base.is_dir():
            raise coded_error("ENOENT", f"Mod directory not found: {base}")
        # same form activate records sources in
        prefix = context.normalize(source_name.replace("\\", "/").strip("/") + "/")
        sub_prefix = context.normalize(f"{sub_dir.strip('/')}/") if sub_dir else ""
        for key, entry in list(context.new.items()):
            if context.normalize(entry.source).startswith(prefix) and key.startswith(sub_prefix):
                del context.new[key]

    async def finalize(self, game_id: str, deploy_path: str, staging_path: str) -> list[ActivationEntry]:
        context = self._require_context(deploy_path)
        try:
            client = context.client
            deploy_root = context.deploy_path
            staging_root = Path(staging_path)

            removals = [
                (key, entry) for key, entry in context.previous.items()
                if key not in context.new
            ]
            additions = [
                (key, entry) for key, entry in context.new.items()
                if key not in context.previous
                or context.previous[key].source != entry.source
                or not (deploy_root / entry.destination).is_symlink()
            ]

            result = dict(context.new)
            failures: list[tuple[str, BaseException]] = []

            removed = await asyncio.gather(
                *(client.remove_link(str(deploy_root / entry.destination)) for _, entry in removals),
                return_exceptions=True,
            )
            for (key, entry), outcome in zip(removals, removed):
                if isinstance(outcome, BaseException) and error_code(outcome) != "ENOENT":
                    failures.append((entry.destination, outcome))
                    # the old link is still in place
                    result[key] = entry

            linked = await asyncio.gather(
                *(
                    client.link_file(str(staging_root / entry.source), str(deploy_root / entry.destination))
                    for _, entry in additions
                ),
                return_exceptions=True,
            )
            for (key, entry), outcome in zip(additions, linked):
                if isinstance(outcome, BaseException):
                    failures.append((entry.destination, outcome))
                    result.pop(key, None)

            if removals:
                remove_empty_tagged_dirs(deploy_root)

            entries = sorted(result.values(), key=lambda entry: entry.destination)
            _log.info(
                "Deployment of %s to %s: %d added, %d removed, %d failed",
                game_id, deploy_path, len(additions), len(removals), len(failures),
            )
        finally:
            await self._end_cycle(deploy_path)

        if failures:
            raise PartialDeployment(entries, failures)
        return entries

    async def cancel(self, game_id: str, deploy_path: str, staging_path: str) -> None:
        await self._end_cycle(deploy_path)

    async def _end_cycle(self, deploy_path: str) -> None:
        context = self._cycles.pop(_cycle_key(deploy_path), None)
        if context is not None:
            await context.client.stop()
