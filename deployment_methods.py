"""
Deployment method contract and registry.

A deployment method projects staged mod files into a game's deploy
directory. Methods don't inherit from a common base; they satisfy the
``DeploymentMethod`` protocol and answer capability queries, and the
registry picks one by matching those answers against the mod types a game
needs. A full cycle always drives a method in this order:

    pre_purge(staging)
    purge(staging, deploy)            once per mod type, idempotent
    post_purge(staging)
    prepare(deploy, clean, last_activation, normalize)
    activate(deploy, ...) / deactivate(deploy, ...)   once per mod
    finalize(game, deploy, staging)   -> new manifest entries

``cancel`` replaces ``finalize`` when any step after ``prepare`` failed.
A cycle is identified by its deploy path and a purge by its staging path,
so one method instance can serve several games at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from fs_utils import Normalize

if TYPE_CHECKING:
    from activation_store import ActivationEntry, ActivationManifest
    from app_state import AppState

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnsupportedReason:
    description: str
    mod_type: str = ""


@runtime_checkable
class DeploymentMethod(Protocol):
    id: str
    name: str
    description: str

    def is_supported(self, game_id: str, mod_type: str) -> Optional[UnsupportedReason]: ...

    async def pre_purge(self, staging_path: str) -> None: ...

    async def purge(self, staging_path: str, deploy_path: str) -> None: ...

    async def post_purge(self, staging_path: str) -> None: ...

    async def prepare(
        self,
        deploy_path: str,
        clean: bool,
        last_activation: Optional[ActivationManifest],
        normalize: Normalize,
    ) -> None: ...

    async def activate(
        self, deploy_path: str, staged_mod_path: str, source_name: str, sub_dir: str, mod_id: str
    ) -> None: ...

    async def deactivate(self, deploy_path: str, staged_mod_path: str, source_name: str, sub_dir: str) -> None: ...

    async def finalize(self, game_id: str, deploy_path: str, staging_path: str) -> list[ActivationEntry]: ...

    async def cancel(self, game_id: str, deploy_path: str, staging_path: str) -> None: ...


class MethodRegistry:
    """Deployment methods in registration order, selected by capability."""

    def __init__(self, methods: list[DeploymentMethod] | None = None):
        self._methods: dict[str, DeploymentMethod] = {}
        for method in methods or []:
            self.register(method)

    def register(self, method: DeploymentMethod) -> None:
        if method.id in self._methods:
            _log.warning("Deployment method %s registered twice, keeping the latest", method.id)
        self._methods[method.id] = method

    def get(self, method_id: str | None) -> DeploymentMethod | None:
        if method_id is None:
            return None
        return self._methods.get(method_id)

    def all(self) -> list[DeploymentMethod]:
        return list(self._methods.values())

    @staticmethod
    def all_types_supported(
        method: DeploymentMethod,
        game_id: str,
        mod_types: list[str],
    ) -> UnsupportedReason | None:
        """First reason ``method`` can't serve one of ``mod_types``, or None."""
        for mod_type in mod_types:
            reason = method.is_supported(game_id, mod_type)
            if reason is not None:
                return reason
        return None

    def supported(self, game_id: str, mod_types: list[str]) -> list[DeploymentMethod]:
        return [
            method for method in self._methods.values()
            if self.all_types_supported(method, game_id, mod_types) is None
        ]

    def current(
        self,
        state: AppState,
        game_id: str,
        mod_types: list[str],
        allow_default: bool = False,
    ) -> DeploymentMethod | None:
        """The method to use for ``game_id``.

        A configured method is returned only while it still supports every
        mod type. With nothing configured and ``allow_default`` set, the first
        supported method is offered instead.
        """
        configured_id = state.activator_id(game_id)
        if configured_id is not None:
            method = self.get(configured_id)
            if method is None or self.all_types_supported(method, game_id, mod_types) is not None:
                return None
            return method
        if allow_default:
            candidates = self.supported(game_id, mod_types)
            return candidates[0] if candidates else None
        return None
