"""
Tests for the link worker: retry policy, link handling and protocol events.
"""

import errno
import os
from unittest.mock import patch

import pytest

from fs_utils import DIR_TAG_NAME
from link_worker import MAX_RETRIES, Envelope, LinkWorker, do_fs


class FakeClock:
    def __init__(self):
        self.delays: list[float] = []

    async def sleep(self, delay):
        self.delays.append(delay)


def failing(times, code=errno.EBUSY, result="ok"):
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if calls["n"] <= times:
            raise OSError(code, os.strerror(code))
        return result

    return op, calls


def make_worker():
    events = []
    worker = LinkWorker(lambda message, payload: events.append((message, payload)), retry_delay=0)
    return worker, events


def completed(events):
    return [payload for message, payload in events if message == "completed"]


# ── do_fs ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_do_fs_recovers_within_retry_budget():
    clock = FakeClock()
    op, calls = failing(MAX_RETRIES)

    assert await do_fs(op, sleep=clock.sleep) == "ok"

    assert calls["n"] == MAX_RETRIES + 1
    assert sum(clock.delays) <= 0.5


@pytest.mark.asyncio
async def test_do_fs_gives_up_with_original_code():
    clock = FakeClock()
    op, calls = failing(MAX_RETRIES + 1)

    with pytest.raises(OSError) as info:
        await do_fs(op, sleep=clock.sleep)

    assert info.value.errno == errno.EBUSY
    assert calls["n"] == MAX_RETRIES + 1
    assert clock.delays == [0.1] * MAX_RETRIES


@pytest.mark.asyncio
async def test_do_fs_does_not_retry_permanent_errors():
    clock = FakeClock()
    op, calls = failing(1, code=errno.ENOENT)

    with pytest.raises(FileNotFoundError):
        await do_fs(op, sleep=clock.sleep)

    assert calls["n"] == 1
    assert clock.delays == []


# ── link-file ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_link_file_creates_tagged_directories(tmp_path):
    source = tmp_path / "staging" / "a.txt"
    source.parent.mkdir()
    source.write_text("a", encoding="utf-8")
    destination = tmp_path / "deploy" / "x" / "y" / "a.txt"
    worker, events = make_worker()

    worker.handle(Envelope(message="link-file", payload={"source": str(source), "destination": str(destination), "num": 1}))
    await worker.drain()

    assert completed(events) == [{"err": None, "num": 1}]
    assert os.readlink(destination) == str(source)
    for directory in (tmp_path / "deploy", tmp_path / "deploy" / "x", tmp_path / "deploy" / "x" / "y"):
        assert (directory / DIR_TAG_NAME).exists()


@pytest.mark.asyncio
async def test_link_file_replaces_existing_file(tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("new", encoding="utf-8")
    destination = tmp_path / "deploy" / "a.txt"
    destination.parent.mkdir()
    destination.write_text("old", encoding="utf-8")
    worker, events = make_worker()

    worker.handle(Envelope(message="link-file", payload={"source": str(source), "destination": str(destination), "num": 2}))
    await worker.drain()

    assert completed(events) == [{"err": None, "num": 2}]
    assert destination.read_text(encoding="utf-8") == "new"
    assert not (destination.parent / DIR_TAG_NAME).exists()


@pytest.mark.asyncio
async def test_link_file_survives_transient_busy(tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("a", encoding="utf-8")
    destination = tmp_path / "a-link.txt"
    real_symlink = os.symlink
    attempts = {"n": 0}

    def flaky_symlink(src, dst):
        attempts["n"] += 1
        if attempts["n"] <= 3:
            raise OSError(errno.EBUSY, "busy")
        real_symlink(src, dst)

    worker, events = make_worker()
    with patch("link_worker.os.symlink", side_effect=flaky_symlink):
        worker.handle(Envelope(message="link-file", payload={"source": str(source), "destination": str(destination), "num": 3}))
        await worker.drain()

    assert completed(events) == [{"err": None, "num": 3}]
    assert destination.is_symlink()


@pytest.mark.asyncio
async def test_link_file_reports_exhausted_retries(tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("a", encoding="utf-8")
    worker, events = make_worker()

    with patch("link_worker.os.symlink", side_effect=OSError(errno.EBUSY, "busy")):
        worker.handle(Envelope(
            message="link-file",
            payload={"source": str(source), "destination": str(tmp_path / "b.txt"), "num": 4},
        ))
        await worker.drain()

    [result] = completed(events)
    assert result["num"] == 4
    assert result["err"]["code"] == "EBUSY"
    assert any(message == "log" and payload["level"] == "error" for message, payload in events)


@pytest.mark.asyncio
async def test_link_file_onto_directory_reports_not_supported(tmp_path):
    source = tmp_path / "a.txt"
    source.write_text("a", encoding="utf-8")
    blocker = tmp_path / "deploy" / "a.txt"
    blocker.mkdir(parents=True)
    worker, events = make_worker()

    worker.handle(Envelope(message="link-file", payload={"source": str(source), "destination": str(blocker), "num": 5}))
    await worker.drain()

    assert ("report", "not-supported") in events
    assert completed(events)[0]["err"]["code"] == "EISDIR"


# ── remove-link and protocol ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_remove_link_leaves_regular_files(tmp_path):
    target = tmp_path / "a.txt"
    target.write_text("a", encoding="utf-8")
    link = tmp_path / "link.txt"
    os.symlink(target, link)
    worker, events = make_worker()

    worker.handle(Envelope(message="remove-link", payload={"destination": str(target), "num": 6}))
    worker.handle(Envelope(message="remove-link", payload={"destination": str(link), "num": 7}))
    await worker.drain()

    assert sorted(completed(events), key=lambda p: p["num"]) == [
        {"err": None, "num": 6},
        {"err": None, "num": 7},
    ]
    assert target.exists()
    assert not link.is_symlink()


@pytest.mark.asyncio
async def test_remove_missing_link_reports_enoent(tmp_path):
    worker, events = make_worker()

    worker.handle(Envelope(message="remove-link", payload={"destination": str(tmp_path / "gone"), "num": 8}))
    await worker.drain()

    assert completed(events)[0]["err"]["code"] == "ENOENT"


@pytest.mark.asyncio
async def test_unknown_message_is_logged_not_fatal():
    worker, events = make_worker()
    worker.start()

    worker.handle(Envelope(message="format-disk", payload={}))
    worker.handle(Envelope(message="quit", payload={}))
    await worker.drain()

    assert events[0] == ("initialised", {})
    [(message, payload)] = [e for e in events[1:] if e[0] == "log"]
    assert payload["level"] == "error"
    assert "link-file" in payload["message"]
    assert completed(events) == []
