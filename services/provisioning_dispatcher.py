"""
Provisioning Dispatcher

Fire-and-forget provisioning for webhook and checkout paths. A confirmed payment hands its
order id to submit() and the HTTP response goes out immediately; the provisioning attempt
runs as its own asyncio task. Completion is signalled through a per-order asyncio.Event so
callers (tests, admin endpoints, graceful shutdown) can wait for it.

A second submit for an order whose task is still running reuses that task.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional

from monitoring.production_logging import log_error_with_context

logger = logging.getLogger(__name__)

# Completed results kept for wait_for() after the task is gone
MAX_REMEMBERED_RESULTS = 500


class ProvisioningDispatcher:

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator
        self._tasks: Dict[str, asyncio.Task] = {}
        self._events: Dict[str, asyncio.Event] = {}
        self._results: 'OrderedDict[str, Dict[str, Any]]' = OrderedDict()

    def _get_or_create_event(self, order_id: str) -> asyncio.Event:
        """Get or lazily create the completion event (must be called from async context)."""
        event = self._events.get(order_id)
        if event is None:
            event = asyncio.Event()
            self._events[order_id] = event
        return event

    def submit(self, order_id: str) -> asyncio.Task:
        """Schedule provisioning for an order; returns the running task"""
        running = self._tasks.get(order_id)
        if running is not None and not running.done():
            logger.debug(f"Provisioning task for {order_id} already running - reusing")
            return running

        event = self._get_or_create_event(order_id)
        event.clear()
        self._results.pop(order_id, None)
        task = asyncio.create_task(self._run(order_id, event), name=f"provision-{order_id}")
        self._tasks[order_id] = task
        logger.info(f"📤 DISPATCH: Provisioning scheduled for order {order_id}")
        return task

    async def _run(self, order_id: str, event: asyncio.Event) -> Dict[str, Any]:
        result: Dict[str, Any] = {'status': 'cancelled', 'success': False, 'order_id': order_id}
        try:
            result = await self.orchestrator.provision_order(order_id)
        except asyncio.CancelledError:
            logger.info(f"Provisioning task for {order_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"💥 DISPATCH: Provisioning task for {order_id} crashed")
            log_error_with_context('dispatcher', e, {'stage': 'provision_order'}, order_id=order_id)
            result = {'status': 'error', 'success': False, 'order_id': order_id, 'error': str(e)}
        finally:
            self._remember(order_id, result)
            self._tasks.pop(order_id, None)
            event.set()
        return result

    def _remember(self, order_id: str, result: Dict[str, Any]) -> None:
        self._results[order_id] = result
        self._results.move_to_end(order_id)
        while len(self._results) > MAX_REMEMBERED_RESULTS:
            stale_id, _ = self._results.popitem(last=False)
            self._events.pop(stale_id, None)

    async def wait_for(self, order_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Block until the order's current provisioning task finishes; None on timeout or if never submitted"""
        if order_id not in self._tasks and order_id not in self._results:
            return None
        event = self._get_or_create_event(order_id)
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ DISPATCH: Timed out waiting for order {order_id}")
            return None
        return self._results.get(order_id)

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every running provisioning task"""
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"⏳ DISPATCH: Waiting for {len(tasks)} provisioning task(s)")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(f"⚠️ DISPATCH: {len(pending)} provisioning task(s) still running after drain timeout")

    async def shutdown(self, timeout: float = 30.0) -> None:
        await self.drain(timeout=timeout)
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()
