"""
dopaya.api.tasks — Periodic Background Tasks
==============================================

Scheduled jobs that run inside the API process on the event loop:

- **Intent reconciliation** — every ``reconcile_interval_seconds``
  (default 300), resolves ledger intents left ``pending`` or ``applied``
  by a crashed or failed request.
- **Balance audit** — piggybacks on every 12th reconciliation pass and only
  reports drift.

Both run via ``run_db()`` so the event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from dopaya.database.engine import run_db
from dopaya.services.reconciliation_service import audit_balances, reconcile_intents

if TYPE_CHECKING:
    from dopaya.config import DopayaConfig
    from dopaya.services.store import PointsStore

logger = logging.getLogger(__name__)

AUDIT_EVERY_N_PASSES = 12


class ReconcileLoop:
    """Owns the background reconciliation task."""

    def __init__(self, store: PointsStore, cfg: DopayaConfig) -> None:
        self.store = store
        self.interval = cfg.reconcile_interval_seconds
        self.stale_after = cfg.intent_stale_after_seconds
        self.passes = 0
        self._task: asyncio.Task | None = None

    async def run_once(self) -> dict:
        result = await run_db(reconcile_intents, self.store, self.stale_after)
        self.passes += 1
        logger.info(
            "Reconciliation pass %d: abandoned=%d committed=%d rolled_forward=%d",
            self.passes, result["abandoned"], result["committed"], result["rolled_forward"],
        )
        if self.passes % AUDIT_EVERY_N_PASSES == 0:
            await run_db(audit_balances, self.store)
        return result

    def start(self) -> None:
        """Start the background loop on the running event loop."""
        if self._task is not None:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.run_once()
                except Exception:
                    logger.exception("Reconciliation task failed", extra={"task": "reconciliation"})

        self._task = asyncio.get_running_loop().create_task(_loop(), name="intent-reconcile")

    def stop(self) -> None:
        """Cancel the loop task."""
        if self._task:
            self._task.cancel()
            self._task = None
