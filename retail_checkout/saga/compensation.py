"""
Saga Service — compensation stack

Each reversible step pushes its undo as soon as it may have taken effect.
On failure the stack is unwound last-in first-out. Undo actions are
best-effort: one failing is logged and recorded, and the rest still run.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Compensation:
    action: str
    target: str
    undo: Callable[[], Awaitable[object]]


class CompensationStack:
    def __init__(self) -> None:
        self._stack: list[Compensation] = []

    def push(self, action: str, target: str, undo: Callable[[], Awaitable[object]]) -> None:
        self._stack.append(Compensation(action, target, undo))

    def __len__(self) -> int:
        return len(self._stack)

    def pending(self) -> list[str]:
        return [f"{c.action}:{c.target}" for c in reversed(self._stack)]

    async def unwind(self, saga_id: str, timeout: float) -> list[dict]:
        """Run every pending undo, newest first. Returns one outcome per undo."""
        outcomes = []
        while self._stack:
            compensation = self._stack.pop()
            logger.info("[saga=%s] COMPENSATE %s %s", saga_id, compensation.action, compensation.target)
            try:
                result = await asyncio.wait_for(compensation.undo(), timeout=timeout)
            except Exception as e:
                logger.error(
                    "[saga=%s] COMPENSATION FAILED %s %s: %r",
                    saga_id, compensation.action, compensation.target, e,
                )
                outcomes.append({
                    "action": compensation.action,
                    "target": compensation.target,
                    "status": "FAILED",
                    "error": repr(e),
                })
                continue

            ok = getattr(result, "succeeded", True)
            outcome = {
                "action": compensation.action,
                "target": compensation.target,
                "status": "COMPLETED" if ok else "FAILED",
            }
            if not ok:
                outcome["error"] = getattr(result, "error", None)
            outcomes.append(outcome)
        return outcomes
