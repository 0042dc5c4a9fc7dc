"""
Activation manifest persistence.

One manifest per (game, mod type) records what a deployment placed in the
deploy directory, so the next cycle can diff against it instead of scanning
the filesystem. The file sits in the deploy directory itself:

    <deploy>/.modlinker.deployment.json            default mod type ("")
    <deploy>/.modlinker.deployment.<type>.json     any other mod type

Schema version 1
----------------
{
    "version": 1,
    "instanceId": "5f0c9d...",
    "gameId": "skyrimse",
    "modType": "",
    "deployPath": "/games/skyrim/Data",
    "stagingPath": "/staging/skyrimse",
    "activatorId": "symlink_activator",
    "files": [
        {"source": "modA/fileA.txt", "destination": "fileA.txt", "modId": "m1"}
    ]
}

``source`` is relative to the staging folder, ``destination`` relative to
the deploy directory, both with forward slashes. Unknown fields are ignored
so newer writers stay readable.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fs_utils import (
    atomic_write_text,
    find_managed_links,
    remove_empty_tagged_dirs,
)

if TYPE_CHECKING:
    from deployment_methods import DeploymentMethod

MANIFEST_VERSION = 1
MANIFEST_PREFIX = ".modlinker.deployment"

_log = logging.getLogger(__name__)


class ActivationEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    source: str
    destination: str
    mod_id: str = Field(alias="modId")

    @field_validator("source", "destination")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return v.replace("\\", "/").strip("/")


class ActivationManifest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: int = MANIFEST_VERSION
    instance_id: str = Field(alias="instanceId")
    game_id: str = Field(default="", alias="gameId")
    mod_type: str = Field(default="", alias="modType")
    deploy_path: str = Field(default="", alias="deployPath")
    staging_path: str = Field(default="", alias="stagingPath")
    activator_id: str = Field(alias="activatorId")
    files: list[ActivationEntry] = Field(default_factory=list)


def manifest_name(mod_type: str) -> str:
    if not mod_type:
        return f"{MANIFEST_PREFIX}.json"
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", mod_type)
    return f"{MANIFEST_PREFIX}.{safe}.json"


def manifest_path(mod_type: str, deploy_path: str | Path) -> Path:
    return Path(deploy_path) / manifest_name(mod_type)


def read_manifest(mod_type: str, deploy_path: str | Path) -> ActivationManifest | None:
    path = manifest_path(mod_type, deploy_path)
    if not path.exists():
        return None
    try:
        return ActivationManifest.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        _log.warning("Could not read activation manifest %s: %s", path, exc)
        return None


def load(
    mod_type: str,
    deploy_path: str | Path,
    staging_path: str | Path,
    method: DeploymentMethod,
    instance_id: str | None = None,
) -> ActivationManifest | None:
    """Load the last activation for ``mod_type`` in ``deploy_path``.

    Returns None on first deployment, when the stored manifest is unreadable,
    was written by a different deployment method, or, if ``instance_id`` is
    given, by a different application instance.
    """
    manifest = read_manifest(mod_type, deploy_path)
    if manifest is None:
        return None
    if manifest.activator_id != method.id:
        _log.info(
            "Ignoring activation in %s written by %s (current method %s)",
            deploy_path, manifest.activator_id, method.id,
        )
        return None
    if instance_id is not None and manifest.instance_id != instance_id:
        _log.warning(
            "Ignoring activation in %s written by instance %s", deploy_path, manifest.instance_id
        )
        return None
    if manifest.staging_path and os.path.normcase(manifest.staging_path) != os.path.normcase(
        str(staging_path)
    ):
        _log.info(
            "Activation in %s was made from staging folder %s, now %s",
            deploy_path, manifest.staging_path, staging_path,
        )
    return manifest


def save(
    mod_type: str,
    instance_id: str,
    deploy_path: str | Path,
    staging_path: str | Path,
    entries: list[ActivationEntry],
    activator_id: str,
    game_id: str = "",
) -> None:
    """Replace the manifest atomically; readers never see a partial file."""
    manifest = ActivationManifest(
        instance_id=instance_id,
        game_id=game_id,
        mod_type=mod_type,
        deploy_path=str(deploy_path),
        staging_path=str(staging_path),
        activator_id=activator_id,
        files=sorted(entries, key=lambda entry: entry.destination),
    )
    atomic_write_text(
        manifest_path(mod_type, deploy_path),
        manifest.model_dump_json(by_alias=True, indent=2),
    )
    _log.debug("Saved activation for type %r in %s: %d file(s)", mod_type, deploy_path, len(entries))


def stale_entries(manifest: ActivationManifest, deploy_path: str | Path) -> list[ActivationEntry]:
    """Entries whose destination is no longer a link on disk."""
    deploy_path = Path(deploy_path)
    return [
        entry for entry in manifest.files
        if not (deploy_path / entry.destination).is_symlink()
    ]


def fallback_purge(deploy_paths: dict[str, str], staging_path: str | Path) -> int:
    """Remove deployed links without manifest guidance.

    Only symlinks that resolve into ``staging_path`` and emptied directories
    carrying the deployment tag are touched; user files survive. The manifests
    of the purged types are dropped since they no longer describe anything.
    Returns the number of links removed.
    """
    removed = 0
    for mod_type, deploy_path in deploy_paths.items():
        for link in find_managed_links(deploy_path, staging_path):
            try:
                link.unlink()
                removed += 1
            except FileNotFoundError:
                pass
        for directory in remove_empty_tagged_dirs(deploy_path):
            _log.debug("Removed empty deployment directory %s", directory)
        path = manifest_path(mod_type, deploy_path)
        if path.exists():
            path.unlink()
    _log.info("Fallback purge removed %d link(s) from %d location(s)", removed, len(deploy_paths))
    return removed
