"""
Tests for SymlinkActivator driven directly through its deployment cycle.
"""

import errno
import os
from unittest.mock import patch

import pytest

from errors import PartialDeployment, ProcessCanceled, error_code
from fs_utils import DIR_TAG_NAME, get_normalize_func
from refresh_mods import write_mod_marker
from tests.conftest import GAME_ID, make_activator


# ── helpers ──────────────────────────────────────────────────────────────────

def stage(staging, installation_path, files):
    for rel, text in files.items():
        target = staging / installation_path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text, encoding="utf-8")
    return staging / installation_path


async def deploy(activator, staging, deploy_path, mods, clean=True, last=None):
    """mods: list of (installation_path, sub_dir, mod_id)."""
    await activator.prepare(str(deploy_path), clean, last, get_normalize_func(deploy_path))
    for installation_path, sub_dir, mod_id in mods:
        await activator.activate(
            str(deploy_path), str(staging / installation_path), installation_path, sub_dir, mod_id
        )
    return await activator.finalize(GAME_ID, str(deploy_path), str(staging))


class Last:
    """Stand-in for an ActivationManifest holding only ``files``."""

    def __init__(self, files):
        self.files = files


@pytest.fixture
def layout(tmp_path):
    staging = tmp_path / "staging"
    deploy_path = tmp_path / "game" / "Data"
    deploy_path.mkdir(parents=True)
    stage(staging, "modA", {"fileA.txt": "a", "textures/t.dds": "t"})
    stage(staging, "modB", {"fileB.txt": "b", "textures/t.dds": "t2"})
    return staging, deploy_path


# ── deploy ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deploy_links_every_file(layout):
    staging, deploy_path = layout
    write_mod_marker(staging / "modA", "m1")

    entries = await deploy(make_activator(), staging, deploy_path, [("modA", "", "m1")])

    assert [(e.source, e.destination, e.mod_id) for e in entries] == [
        ("modA/fileA.txt", "fileA.txt", "m1"),
        ("modA/textures/t.dds", "textures/t.dds", "m1"),
    ]
    assert os.readlink(deploy_path / "fileA.txt") == str(staging / "modA" / "fileA.txt")
    assert (deploy_path / "textures" / DIR_TAG_NAME).exists()


@pytest.mark.asyncio
async def test_later_mod_wins_shared_destination(layout):
    staging, deploy_path = layout

    entries = await deploy(make_activator(), staging, deploy_path, [("modA", "", "m1"), ("modB", "", "m2")])

    shared = [e for e in entries if e.destination == "textures/t.dds"]
    assert [e.mod_id for e in shared] == ["m2"]
    assert (deploy_path / "textures" / "t.dds").read_text(encoding="utf-8") == "t2"


@pytest.mark.asyncio
async def test_sub_dir_is_prefixed(layout):
    staging, deploy_path = layout

    entries = await deploy(make_activator(), staging, deploy_path, [("modA", "m1", "m1")])

    assert {e.destination for e in entries} == {"m1/fileA.txt", "m1/textures/t.dds"}
    assert (deploy_path / "m1" / "fileA.txt").is_symlink()


@pytest.mark.asyncio
async def test_undeploy_then_redeploy_round_trip(layout):
    staging, deploy_path = layout
    activator = make_activator()
    mods = [("modA", "", "m1"), ("modB", "", "m2")]
    original = await deploy(activator, staging, deploy_path, mods)

    await activator.prepare(str(deploy_path), False, Last(original), get_normalize_func(deploy_path))
    await activator.deactivate(str(deploy_path), str(staging / "modB"), "modB", "")
    without_b = await activator.finalize(GAME_ID, str(deploy_path), str(staging))

    assert {e.mod_id for e in without_b} == {"m1"}
    assert not (deploy_path / "fileB.txt").exists()
    assert not (deploy_path / "textures" / "t.dds").is_symlink()

    redeployed = await deploy(activator, staging, deploy_path, mods, clean=False, last=Last(without_b))

    assert redeployed == original
    assert (deploy_path / "textures" / "t.dds").read_text(encoding="utf-8") == "t2"


@pytest.mark.asyncio
async def test_deactivate_missing_mod_dir(layout):
    staging, deploy_path = layout
    activator = make_activator()
    await activator.prepare(str(deploy_path), False, None, get_normalize_func(deploy_path))

    with pytest.raises(OSError) as info:
        await activator.deactivate(str(deploy_path), str(staging / "gone"), "gone", "")
    await activator.cancel(GAME_ID, str(deploy_path), str(staging))

    assert error_code(info.value) == "ENOENT"


@pytest.mark.asyncio
async def test_activate_without_prepare_is_canceled(layout):
    staging, deploy_path = layout
    with pytest.raises(ProcessCanceled):
        await make_activator().activate(str(deploy_path), str(staging / "modA"), "modA", "", "m1")


@pytest.mark.asyncio
async def test_second_prepare_for_same_deploy_path_is_canceled(layout):
    staging, deploy_path = layout
    activator = make_activator()
    await activator.prepare(str(deploy_path), True, None, get_normalize_func(deploy_path))

    with pytest.raises(ProcessCanceled):
        await activator.prepare(str(deploy_path), True, None, get_normalize_func(deploy_path))
    await activator.cancel(GAME_ID, str(deploy_path), str(staging))

    # the canceled cycle no longer blocks a new one
    assert await deploy(activator, staging, deploy_path, []) == []


@pytest.mark.asyncio
async def test_interleaved_cycles_keep_their_own_targets(tmp_path):
    activator = make_activator()
    cycles = []
    for name in ("one", "two"):
        staging = tmp_path / name / "staging"
        deploy_path = tmp_path / name / "Data"
        deploy_path.mkdir(parents=True)
        stage(staging, "mod", {f"{name}.txt": name})
        cycles.append((staging, deploy_path))

    for staging, deploy_path in cycles:
        await activator.prepare(str(deploy_path), True, None, get_normalize_func(deploy_path))
    for staging, deploy_path in cycles:
        await activator.activate(str(deploy_path), str(staging / "mod"), "mod", "", "m1")
    results = [
        await activator.finalize(GAME_ID, str(deploy_path), str(staging)) for staging, deploy_path in cycles
    ]

    assert [[e.destination for e in entries] for entries in results] == [["one.txt"], ["two.txt"]]
    for (staging, deploy_path), name in zip(cycles, ("one", "two")):
        assert os.listdir(deploy_path) == [f"{name}.txt"]
        assert os.readlink(deploy_path / f"{name}.txt") == str(staging / "mod" / f"{name}.txt")


@pytest.mark.asyncio
async def test_deactivate_nested_installation_path(tmp_path):
    staging = tmp_path / "staging"
    deploy_path = tmp_path / "Data"
    deploy_path.mkdir()
    stage(staging, "author/modA", {"fileA.txt": "a"})
    stage(staging, "other/modA", {"fileB.txt": "b"})
    activator = make_activator()
    deployed = await deploy(
        activator, staging, deploy_path, [("author/modA", "", "m1"), ("other/modA", "", "m2")]
    )

    await activator.prepare(str(deploy_path), False, Last(deployed), get_normalize_func(deploy_path))
    await activator.deactivate(str(deploy_path), str(staging / "author" / "modA"), "author/modA", "")
    remaining = await activator.finalize(GAME_ID, str(deploy_path), str(staging))

    assert [(e.source, e.mod_id) for e in remaining] == [("other/modA/fileB.txt", "m2")]
    assert not os.path.lexists(deploy_path / "fileA.txt")
    assert (deploy_path / "fileB.txt").is_symlink()


@pytest.mark.asyncio
async def test_partial_failure_drops_unlinked_entries(layout):
    staging, deploy_path = layout
    real_symlink = os.symlink

    def refuse_dds(src, dst):
        if str(dst).endswith(".dds"):
            raise OSError(errno.EACCES, "denied")
        real_symlink(src, dst)

    with patch("link_worker.os.symlink", side_effect=refuse_dds):
        with pytest.raises(PartialDeployment) as info:
            await deploy(make_activator(), staging, deploy_path, [("modA", "", "m1")])

    assert [e.destination for e in info.value.entries] == ["fileA.txt"]
    assert [destination for destination, _ in info.value.failures] == ["textures/t.dds"]
    assert not info.value.transient


# ── purge ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_purge_removes_only_managed_links(layout):
    staging, deploy_path = layout
    activator = make_activator()
    await deploy(activator, staging, deploy_path, [("modA", "", "m1")])
    (deploy_path / "user.ini").write_text("keep", encoding="utf-8")

    await activator.pre_purge(str(staging))
    await activator.purge(str(staging), str(deploy_path))
    await activator.post_purge(str(staging))

    assert sorted(os.listdir(deploy_path)) == ["user.ini"]
    assert (staging / "modA" / "fileA.txt").exists()


@pytest.mark.asyncio
async def test_purge_clean_or_missing_directory_is_noop(layout, tmp_path):
    staging, deploy_path = layout
    activator = make_activator()

    await activator.pre_purge(str(staging))
    await activator.purge(str(staging), str(deploy_path))
    await activator.purge(str(staging), str(tmp_path / "missing"))
    await activator.post_purge(str(staging))

    assert os.listdir(deploy_path) == []
