"""
Manager side of the link worker protocol.

``LinkWorkerClient`` numbers every request, waits for the matching
``completed`` event and turns worker errors back into exceptions. The
transport is pluggable: ``SubprocessChannel`` talks to a child
``python -m link_worker`` over stdin/stdout, ``LocalChannel`` runs the same
worker in-process behind the same envelope protocol.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import sys
from typing import Any, Callable, Optional, Protocol

from pydantic import ValidationError

from errors import ProcessCanceled, TemporaryError, coded_error
from link_worker import RETRY_DELAY, RETRY_ERRORS, Envelope, LinkWorker

START_TIMEOUT = 30.0

Receive = Callable[[Envelope], None]
Disconnected = Callable[[], None]

_log = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LinkChannel(Protocol):
    async def open(self, receive: Receive, disconnected: Disconnected) -> None: ...

    async def send(self, envelope: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class LocalChannel:
    def __init__(self, retry_delay: float = RETRY_DELAY):
        self._retry_delay = retry_delay
        self._worker: LinkWorker | None = None
        self._disconnected: Disconnected | None = None

    async def open(self, receive: Receive, disconnected: Disconnected) -> None:
        self._disconnected = disconnected
        self._worker = LinkWorker(
            lambda message, payload: receive(Envelope(message=message, payload=payload)),
            retry_delay=self._retry_delay,
        )
        self._worker.start()

    async def send(self, envelope: dict[str, Any]) -> None:
        if self._worker is None:
            raise ProcessCanceled("link channel is closed")
        self._worker.handle(Envelope.model_validate(envelope))

    async def close(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None:
            await worker.drain()
        if self._disconnected is not None:
            self._disconnected()


class SubprocessChannel:
    def __init__(self, python: str = sys.executable):
        self._python = python
        self._proc: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None

    async def open(self, receive: Receive, disconnected: Disconnected) -> None:
        env = dict(os.environ)
        module_dir = os.path.dirname(os.path.abspath(__file__))
        env["PYTHONPATH"] = os.pathsep.join(p for p in (module_dir, env.get("PYTHONPATH")) if p)
        self._proc = await asyncio.create_subprocess_exec(
            self._python,
            "-m",
            "link_worker",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            env=env,
        )
        _log.debug("Started link worker (pid %s)", self._proc.pid)
        self._reader = asyncio.create_task(self._read_loop(receive, disconnected))

    async def _read_loop(self, receive: Receive, disconnected: Disconnected) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            while True:
                line = await self._proc.stdout.readline()
                if not line:
                    break
                try:
                    envelope = Envelope.model_validate_json(line)
                except ValidationError as exc:
                    _log.warning("Unreadable message from link worker: %s", exc)
                    continue
                receive(envelope)
        finally:
            disconnected()

    async def send(self, envelope: dict[str, Any]) -> None:
        if self._proc is None or self._proc.stdin is None or self._proc.stdin.is_closing():
            raise ProcessCanceled("link worker is not running")
        self._proc.stdin.write((json.dumps(envelope) + "\n").encode("utf-8"))
        await self._proc.stdin.drain()

    async def close(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        code = await proc.wait()
        if self._reader is not None:
            await self._reader
        _log.debug("Link worker exited with code %s", code)


class LinkWorkerClient:
    def __init__(self, channel_factory: Callable[[], LinkChannel] = LocalChannel):
        self._channel_factory = channel_factory
        self._channel: Optional[LinkChannel] = None
        self._initialised: asyncio.Event | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._counter = itertools.count(1)
        self.reports: list[str] = []

    @property
    def running(self) -> bool:
        return self._channel is not None

    async def start(self) -> None:
        if self._channel is not None:
            return
        self._initialised = asyncio.Event()
        channel = self._channel_factory()
        await channel.open(self._receive, self._disconnected)
        self._channel = channel
        await asyncio.wait_for(self._initialised.wait(), timeout=START_TIMEOUT)

    async def stop(self) -> None:
        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            await channel.send({"message": "quit", "payload": {}})
        except ProcessCanceled:
            pass
        await channel.close()
        self._fail_pending(ProcessCanceled("link worker stopped"))

    async def link_file(self, source: str, destination: str) -> None:
        await self._request("link-file", source=source, destination=destination)

    async def remove_link(self, destination: str) -> None:
        await self._request("remove-link", destination=destination)

    async def _request(self, message: str, **payload: Any) -> None:
        if self._channel is None:
            raise ProcessCanceled("link worker is not running")
        num = next(self._counter)
        future = asyncio.get_running_loop().create_future()
        self._pending[num] = future
        try:
            await self._channel.send({"message": message, "payload": {**payload, "num": num}})
        except BaseException:
            self._pending.pop(num, None)
            raise
        await future

    # ── Inbound events ────────────────────────────────────────────────

    def _receive(self, envelope: Envelope) -> None:
        payload = envelope.payload
        if envelope.message == "initialised":
            if self._initialised is not None:
                self._initialised.set()
        elif envelope.message == "log":
            payload = payload or {}
            _log.log(
                _LOG_LEVELS.get(payload.get("level"), logging.INFO),
                "[link worker] %s %s",
                payload.get("message"),
                payload.get("meta") or "",
            )
        elif envelope.message == "report":
            self.reports.append(str(payload))
            _log.warning("Link worker reported: %s", payload)
        elif envelope.message == "completed":
            self._complete(payload or {})
        else:
            _log.debug("Ignoring link worker event %s", envelope.message)

    def _complete(self, payload: dict[str, Any]) -> None:
        future = self._pending.pop(payload.get("num"), None)
        if future is None:
            _log.warning("Completion for unknown request %s", payload.get("num"))
            return
        if future.done():
            return
        err = payload.get("err")
        if err:
            future.set_exception(self._to_error(err))
        else:
            future.set_result(None)

    @staticmethod
    def _to_error(err: dict[str, Any]) -> Exception:
        code = err.get("code") or "UNKNOWN"
        message = err.get("message") or code
        if code in RETRY_ERRORS:
            exc = TemporaryError(f"{message} ({code})")
            exc.code = code
            return exc
        return coded_error(code, message)

    def _disconnected(self) -> None:
        self._fail_pending(ProcessCanceled("link worker disconnected"))

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)
