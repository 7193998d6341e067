"""In-process timers that settle gate passes when their approval window closes.

The deadline itself lives on the row (``resolution_deadline``), so a restart
only loses the asyncio tasks; ``rearm_pending`` recreates them from the
database on startup. A timer firing is only a hint: the resolver re-reads the
row and settles it with a conditional update, so a late, duplicate or
post-restart fire does nothing once the gate pass is settled.
"""

import asyncio
import logging
from datetime import datetime
from functools import lru_cache
from typing import Awaitable, Callable

from sqlalchemy.orm import Session, sessionmaker

from gateguard.db.session import SessionLocal, session_scope
from gateguard.services.gate_pass_service import pending_gate_pass_deadlines, resolve_gate_pass
from gateguard.services.push_service import get_dispatcher
from gateguard.services.time_window_service import utcnow

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Awaitable[object]]


class GatePassScheduler:
    def __init__(self, resolver: Resolver | None = None, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory
        self.resolver = resolver or self._resolve
        self._tasks: dict[str, asyncio.Task] = {}

    async def _resolve(self, gate_pass_id: str):
        with session_scope(self.session_factory) as db:
            return await resolve_gate_pass(db, get_dispatcher(), gate_pass_id)

    def schedule(self, gate_pass_id: str, deadline: datetime) -> asyncio.Task:
        existing = self._tasks.get(gate_pass_id)
        if existing and not existing.done():
            return existing

        delay = max(0.0, (deadline - utcnow()).total_seconds())
        task = asyncio.get_running_loop().create_task(self._fire(gate_pass_id, delay))
        self._tasks[gate_pass_id] = task
        logger.debug("gate pass timer armed gate_pass_id=%s delay=%.1fs", gate_pass_id, delay)
        return task

    async def _fire(self, gate_pass_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            await self.resolver(gate_pass_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("gate pass resolution failed gate_pass_id=%s", gate_pass_id)
        finally:
            if self._tasks.get(gate_pass_id) is asyncio.current_task():
                self._tasks.pop(gate_pass_id, None)

    def rearm_pending(self, db: Session) -> int:
        pending = pending_gate_pass_deadlines(db)
        for gate_pass_id, deadline in pending:
            self.schedule(gate_pass_id, deadline)
        if pending:
            logger.info("re-armed %d gate pass timers", len(pending))
        return len(pending)

    def pending_ids(self) -> set[str]:
        return {gate_pass_id for gate_pass_id, task in self._tasks.items() if not task.done()}

    async def shutdown(self):
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


@lru_cache
def get_scheduler() -> GatePassScheduler:
    return GatePassScheduler()
