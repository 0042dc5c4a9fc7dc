"""
Staging folder tag.

A staging folder is only trusted as a source of deployable files once it
carries a tag naming this application instance. The tag lives at the
staging root:

    <staging>/__modlinker_staging_folder
    {"instance": "5f0c9d...", "game": "skyrimse"}

Directories that are untagged, or tagged by another instance sharing the
same physical folder, need an explicit confirmation before use.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError

from errors import UserCanceled
from fs_utils import atomic_write_text
from interfaces import UserPrompt

STAGING_DIR_TAG = "__modlinker_staging_folder"

FOREIGN_INSTANCE_TEXT = (
    "This is a staging folder but it appears to belong to a different instance "
    "of the mod manager. If you're using it in shared and \"regular\" mode, do not "
    "use the same staging folder for both!"
)
UNMARKED_TEXT = (
    "This directory is not marked as a staging folder. "
    "Are you *sure* it's the right directory?"
)

_log = logging.getLogger(__name__)


class StagingTag(BaseModel):
    model_config = ConfigDict(extra="ignore")

    instance: str
    game: str


def tag_path(staging_path: str | Path) -> Path:
    return Path(staging_path) / STAGING_DIR_TAG


def read_staging_tag(staging_path: str | Path) -> StagingTag | None:
    """Return the parsed tag, or None when it is missing or unreadable."""
    try:
        return StagingTag.model_validate_json(tag_path(staging_path).read_text(encoding="utf-8"))
    except (OSError, ValidationError) as exc:
        _log.debug("No usable staging tag in %s: %s", staging_path, exc)
        return None


def write_staging_tag(staging_path: str | Path, instance_id: str, game_id: str) -> None:
    tag = StagingTag(instance=instance_id, game=game_id)
    atomic_write_text(tag_path(staging_path), tag.model_dump_json())


async def validate_staging_tag(
    staging_path: str | Path,
    instance_id: str,
    prompt: UserPrompt,
) -> None:
    """Confirm ``staging_path`` may be used. Raises UserCanceled if declined."""
    tag = read_staging_tag(staging_path)
    if tag is not None:
        if tag.instance == instance_id:
            return
        _log.info("Staging folder %s is tagged by instance %s", staging_path, tag.instance)
        choice = await prompt.ask("question", "Confirm", FOREIGN_INSTANCE_TEXT, ["Cancel", "Continue"])
    else:
        choice = await prompt.ask("question", "Confirm", UNMARKED_TEXT, ["Cancel", "I'm sure"])

    if choice == "Cancel":
        raise UserCanceled()


async def ensure_staging_tag(
    staging_path: str | Path,
    instance_id: str,
    game_id: str,
    prompt: UserPrompt,
) -> None:
    await validate_staging_tag(staging_path, instance_id, prompt)
    write_staging_tag(staging_path, instance_id, game_id)
