"""First-answer-wins arbitration between a local and a remote prompt answer.

`first_wins` is the one race combinator; `PendingPromptTable` is the only
state shared by the local and remote paths, and an entry leaves it exactly
once (first resolver, timeout, or cancellation).
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from ..contracts.v1.message import Message, PromptRequest, PromptResponse
from ..contracts.v1.structured import structured_event
from ..errors import PromptCancelled, PromptTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def first_wins(
    contenders: Mapping[str, Awaitable[T]],
    *,
    timeout: Optional[float] = None,
) -> Tuple[str, T]:
    """Await the first contender to finish; cancel the rest.

    Returns (name, value). A contender that raises wins with its exception.
    Simultaneous finishers are tie-broken at random so no source is preferred.
    Raises PromptTimeout when nothing finishes within `timeout`.
    """
    if not contenders:
        raise ValueError("first_wins needs at least one contender")
    tasks: Dict["asyncio.Future[T]", str] = {}
    for name, aw in contenders.items():
        tasks[asyncio.ensure_future(aw)] = name
    try:
        done, _pending = await asyncio.wait(set(tasks), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if not done:
            raise PromptTimeout(f"no answer within {timeout:.1f}s" if timeout else "no answer")
        winner = random.choice(sorted(done, key=lambda t: tasks[t])) if len(done) > 1 else next(iter(done))
        return tasks[winner], winner.result()
    finally:
        losers = [t for t in tasks if not t.done()]
        for t in losers:
            t.cancel()
        if losers:
            # Cancellation only has to be delivered; losers must not hold us up.
            await asyncio.wait(losers, timeout=0.5)


@dataclass(frozen=True)
class PromptAnswer:
    request_id: str
    value: Any
    source: str


class PendingPromptTable:
    """Process-local id -> unresolved answer slot."""

    def __init__(self) -> None:
        self._slots: Dict[str, "asyncio.Future[Tuple[Any, str]]"] = {}
        self._listeners: list[Callable[[int], None]] = []

    def add_listener(self, fn: Callable[[int], None]) -> None:
        """`fn(outstanding_count)` after every open/close of an entry."""
        self._listeners.append(fn)

    def _notify(self) -> None:
        n = len(self._slots)
        for fn in list(self._listeners):
            try:
                fn(n)
            except Exception:
                logger.debug("prompt table listener failed", exc_info=True)

    def open(self, request_id: str) -> "asyncio.Future[Tuple[Any, str]]":
        if request_id in self._slots:
            raise ValueError(f"duplicate prompt id: {request_id}")
        fut: "asyncio.Future[Tuple[Any, str]]" = asyncio.get_running_loop().create_future()
        self._slots[request_id] = fut
        self._notify()
        return fut

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    def resolve(self, request_id: str, value: Any, source: str) -> bool:
        """First resolver wins; later or unknown ids return False and are ignored."""
        fut = self._slots.pop(str(request_id or ""), None)
        if fut is None:
            return False
        if not fut.done():
            fut.set_result((value, source))
        self._notify()
        return True

    def reject(self, request_id: str, exc: BaseException) -> bool:
        fut = self._slots.pop(str(request_id or ""), None)
        if fut is None:
            return False
        if not fut.done():
            fut.set_exception(exc)
            # Mark retrieved: nobody may be awaiting a rejected slot anymore.
            fut.exception()
        self._notify()
        return True

    def discard(self, request_id: str) -> bool:
        fut = self._slots.pop(str(request_id or ""), None)
        if fut is None:
            return False
        if not fut.done():
            fut.cancel()
        self._notify()
        return True

    def handle_response(self, resp: PromptResponse, *, source: str = "") -> bool:
        if resp.error:
            return self.reject(resp.id, PromptCancelled(resp.error, details={"request_id": resp.id}))
        return self.resolve(resp.id, resp.value, source or resp.source or "remote")

    def cancel_all(self, reason: str = "cancelled") -> int:
        ids = list(self._slots)
        for rid in ids:
            self.reject(rid, PromptCancelled(reason, details={"request_id": rid}))
        return len(ids)


LocalAsk = Callable[[PromptRequest], Awaitable[Any]]


class PromptArbiter:
    """Publishes a PromptRequest and races the local answer against remote ones."""

    def __init__(
        self,
        table: PendingPromptTable,
        publish: Callable[[Message], None],
        *,
        local: Optional[LocalAsk] = None,
        default_timeout_s: float = 0.0,
    ):
        self.table = table
        self._publish = publish
        self._local = local
        self._default_timeout_s = float(default_timeout_s or 0.0)

    def set_local(self, local: Optional[LocalAsk]) -> None:
        self._local = local

    async def ask(
        self,
        request: PromptRequest,
        *,
        publish: Optional[Callable[[Message], None]] = None,
        announce: bool = True,
    ) -> PromptAnswer:
        """Race the local asker against remote answers.

        `announce=False` skips the `prompt_answered` event; a prompt relayed
        for another process is announced by that process once it gets the
        response.
        """
        rid = request.id
        slot = self.table.open(rid)
        try:
            try:
                (publish or self._publish)(request)
            except Exception:
                logger.warning("prompt publish failed", extra={"request_id": rid}, exc_info=True)

            async def _remote() -> Tuple[Any, str]:
                # shield: losing the race must not cancel the table's slot.
                return await asyncio.shield(slot)

            contenders: Dict[str, Awaitable[Any]] = {"remote": _remote()}
            if self._local is not None:
                contenders["terminal"] = self._local(request)

            timeout = _timeout_s(request, self._default_timeout_s)
            try:
                name, value = await first_wins(contenders, timeout=timeout)
            except PromptTimeout:
                ms = int((timeout or 0) * 1000)
                raise PromptTimeout(f"Prompt request timed out after {ms}ms", details={"request_id": rid}) from None
            if name == "terminal":
                if not self.table.resolve(rid, value, "terminal"):
                    # A remote answer landed first; the table decides.
                    value, source = slot.result()
                    return self._answered(request, value, source, announce)
                return self._answered(request, value, "terminal", announce)
            value, source = value
            return self._answered(request, value, source, announce)
        finally:
            self.table.discard(rid)

    def _answered(self, request: PromptRequest, value: Any, source: str, announce: bool) -> PromptAnswer:
        if not announce:
            return PromptAnswer(request_id=request.id, value=value, source=source)
        try:
            self._publish(
                structured_event(
                    "prompt_answered",
                    request_id=request.id,
                    prompt_kind=request.kind,
                    value=value,
                    source=source,
                )
            )
        except Exception:
            logger.debug("prompt_answered publish failed", exc_info=True)
        return PromptAnswer(request_id=request.id, value=value, source=source)


def _timeout_s(request: PromptRequest, default_s: float) -> Optional[float]:
    if request.timeout_ms is not None and request.timeout_ms > 0:
        return request.timeout_ms / 1000.0
    return default_s if default_s > 0 else None
