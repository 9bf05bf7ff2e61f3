"""Hierarchical cancellation tokens (run -> strategy group -> instance)."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """An ``asyncio.Event`` that also cancels every child created from it."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason: str | None = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    async def wait(self) -> None:
        await self._event.wait()
