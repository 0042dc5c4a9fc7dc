"""
Link worker: performs the filesystem side of symlink deployment.

Runs in its own process (``python -m link_worker``) so operations that may
need elevated rights are isolated from the manager and retried on their
own. Requests and events are JSON envelopes, one per line:

    {"message": "link-file",   "payload": {"source": ..., "destination": ..., "num": 7}}
    {"message": "remove-link", "payload": {"destination": ..., "num": 8}}
    {"message": "quit",        "payload": {}}

Outbound events are ``initialised``, ``log`` ({level, message, meta}),
``completed`` ({err, num}) and ``report``. Requests run concurrently, so
``completed`` events may arrive out of order; callers match them on ``num``.
The worker exits when its input is closed, after in-flight requests finish.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import stat
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from errors import error_code
from fs_utils import DIR_TAG_NAME, DIR_TAG_TEXT, ensure_dir

# Codes typically caused by virus scanners, indexers or short-lived handle
# contention rather than genuine faults.
RETRY_ERRORS = frozenset({"EPERM", "EBUSY", "EIO", "EBADF", "UNKNOWN"})
MAX_RETRIES = 5
RETRY_DELAY = 0.1

Emit = Callable[[str, Any], None]

_log = logging.getLogger(__name__)


class Envelope(BaseModel):
    message: str
    payload: Any = None


def fs_error_code(exc: BaseException) -> str:
    return error_code(exc) or "UNKNOWN"


def serialize_error(exc: BaseException) -> dict[str, str]:
    return {"code": fs_error_code(exc), "message": str(exc)}


async def do_fs(
    op: Callable[[], Any],
    tries: int = MAX_RETRIES,
    delay: float = RETRY_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    """Run ``op``, retrying up to ``tries`` more times on transient errors.

    Waiting is done with timers, so retries of unrelated operations
    interleave instead of blocking each other.
    """
    while True:
        try:
            return op()
        except OSError as exc:
            if fs_error_code(exc) not in RETRY_ERRORS or tries <= 0:
                raise
            tries -= 1
            await sleep(delay)


class LinkWorker:
    def __init__(self, emit: Emit, retry_delay: float = RETRY_DELAY):
        self._emit = emit
        self._retry_delay = retry_delay
        self._pending: set[asyncio.Task] = set()
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            "link-file": self.link_file,
            "remove-link": self.remove_link,
            "quit": self.quit,
        }

    def start(self) -> None:
        self._emit("initialised", {})

    def _log_event(self, level: str, message: str, **meta: Any) -> None:
        self._emit("log", {"level": level, "message": message, "meta": meta})

    async def _fs(self, op: Callable[[], Any]) -> Any:
        return await do_fs(op, delay=self._retry_delay)

    def handle(self, envelope: Envelope) -> None:
        handler = self._handlers.get(envelope.message)
        if handler is None:
            self._log_event(
                "error",
                f'unknown message "{envelope.message}", expected one of '
                f'"{", ".join(self._handlers)}"',
                got=envelope.message,
            )
            return
        payload = envelope.payload if isinstance(envelope.payload, dict) else {}
        task = asyncio.ensure_future(handler(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Handlers ──────────────────────────────────────────────────────

    async def link_file(self, payload: dict[str, Any]) -> None:
        num = payload.get("num")
        try:
            source = payload["source"]
            destination = payload["destination"]
            parent = os.path.dirname(destination)
            created = await self._fs(lambda: ensure_dir(parent))
            if created:
                self._log_event("debug", "created directory", dirName=parent)
                for directory in created:
                    tag = Path(directory) / DIR_TAG_NAME
                    await self._fs(lambda: tag.write_text(DIR_TAG_TEXT, encoding="utf-8"))
            else:
                # the directory existed, so a stale file may be in the way
                try:
                    await self._fs(lambda: os.unlink(destination))
                except FileNotFoundError:
                    pass

            try:
                await self._fs(lambda: os.symlink(source, destination))
            except FileExistsError:
                await self._fs(lambda: os.unlink(destination))
                await self._fs(lambda: os.symlink(source, destination))

            self._log_event("debug", "installed", source=source, destination=destination)
            self._emit("completed", {"err": None, "num": num})
        except Exception as exc:
            if fs_error_code(exc) == "EISDIR":
                self._emit("report", "not-supported")
            else:
                self._log_event("error", "failed to install symlink", err=str(exc))
            self._emit("completed", {"err": serialize_error(exc), "num": num})

    async def remove_link(self, payload: dict[str, Any]) -> None:
        num = payload.get("num")
        try:
            destination = payload["destination"]
            info = await self._fs(lambda: os.lstat(destination))
            if stat.S_ISLNK(info.st_mode):
                await self._fs(lambda: os.unlink(destination))
            self._emit("completed", {"err": None, "num": num})
        except Exception as exc:
            self._emit("completed", {"err": serialize_error(exc), "num": num})

    async def quit(self, payload: dict[str, Any]) -> None:
        # teardown happens when the channel closes
        return None


# ── Process entry point ───────────────────────────────────────────────


async def serve_stdio() -> None:
    loop = asyncio.get_running_loop()

    def emit(message: str, payload: Any) -> None:
        sys.stdout.write(json.dumps({"message": message, "payload": payload}) + "\n")
        sys.stdout.flush()

    worker = LinkWorker(emit)
    worker.start()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        if not line.strip():
            continue
        try:
            envelope = Envelope.model_validate_json(line)
        except ValidationError as exc:
            emit("log", {"level": "error", "message": "malformed message", "meta": {"err": str(exc)}})
            continue
        worker.handle(envelope)
    await worker.drain()


def main() -> None:
    logging.basicConfig(stream=sys.stderr, level=logging.WARNING)
    asyncio.run(serve_stdio())


if __name__ == "__main__":
    main()
