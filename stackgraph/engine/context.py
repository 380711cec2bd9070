"""
Shared resolution state for one deployment.

Each resource owns one future that carries either its outputs or its permanent
``ResolutionError``. Futures are written at most once.
"""
import asyncio
from typing import Any, Dict, Iterable, Mapping, Optional

from stackgraph.models.errors import ResolutionCancelledError, ResolutionError


class ResolutionContext:
    def __init__(self, names: Iterable[str]):
        loop = asyncio.get_running_loop()
        self._futures: Dict[str, asyncio.Future] = {name: loop.create_future() for name in names}

    def __contains__(self, name: str) -> bool:
        return name in self._futures

    def _future(self, name: str) -> asyncio.Future:
        try:
            return self._futures[name]
        except KeyError:
            raise ResolutionError(f"Resource '{name}' is not part of this deployment", name)

    async def wait(self, name: str) -> Mapping[str, Any]:
        # shield: a cancelled consumer must not cancel the producer's future
        return await asyncio.shield(self._future(name))

    def peek(self, name: str) -> Optional[Mapping[str, Any]]:
        future = self._futures.get(name)
        if future is None or not future.done() or future.cancelled():
            return None
        if future.exception() is not None:
            return None
        return future.result()

    def done(self, name: str) -> bool:
        return self._future(name).done()

    def error(self, name: str) -> Optional[ResolutionError]:
        future = self._future(name)
        if not future.done() or future.cancelled():
            return None
        return future.exception()

    def settle(self, name: str, outputs: Mapping[str, Any]) -> None:
        future = self._future(name)
        if future.done():
            raise ResolutionError(f"Outputs of '{name}' were already written", name)
        future.set_result(dict(outputs))

    def fail(self, name: str, error: ResolutionError) -> None:
        future = self._future(name)
        if future.done():
            raise ResolutionError(f"Outputs of '{name}' were already written", name)
        future.set_exception(error)
        # failures are read through dependents; keep asyncio from logging them as unretrieved
        future.exception()

    def cancel(self, name: str) -> None:
        future = self._future(name)
        if not future.done():
            future.set_exception(ResolutionCancelledError(name))
            future.exception()
