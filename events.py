"""
Named event bus connecting the orchestrator with the rest of the
application.

Handlers may be plain functions or coroutines. ``emit`` runs every handler
of an event concurrently and logs, rather than propagates, their failures,
so one broken listener can't stop the others.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

_log = logging.getLogger(__name__)

Handler = Callable[..., Any]


@dataclass(order=True)
class _Subscription:
    priority: int
    func: Handler = field(compare=False)
    owner: str = field(compare=False, default="<core>")


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[_Subscription]] = defaultdict(list)

    def on(self, event: str, handler: Handler, priority: int = 10, owner: str = "<core>") -> None:
        """Subscribe ``handler``; lower priorities are listed first."""
        self._handlers[event].append(_Subscription(priority, handler, owner))
        self._handlers[event].sort()
        _log.debug("Registered handler for '%s' from %s", event, owner)

    def off(self, event: str, handler: Handler) -> None:
        self._handlers[event] = [sub for sub in self._handlers[event] if sub.func is not handler]

    def handlers(self, event: str) -> list[Handler]:
        return [sub.func for sub in self._handlers.get(event, [])]

    async def emit(self, event: str, *args: Any, **kwargs: Any) -> list[Any]:
        """Run all handlers of ``event``; returns their results in order.

        A failed handler contributes its exception to the result list.
        """
        subscriptions = list(self._handlers.get(event, []))
        if not subscriptions:
            return []

        async def call(sub: _Subscription) -> Any:
            result = sub.func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        results = await asyncio.gather(*(call(sub) for sub in subscriptions), return_exceptions=True)
        for sub, result in zip(subscriptions, results):
            if isinstance(result, Exception):
                _log.error(
                    "Error in handler for '%s' from %s: %s", event, sub.owner, result, exc_info=result
                )
        return results
