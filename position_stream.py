"""
Position Event Router

Entry point of the position feed. Each follower account gets its own FIFO
queue and worker thread, so events of one account are handled strictly in
arrival order while different accounts run in parallel.

- position updated: remembered as the latest snapshot of the open position;
  a newly seen position is checked for a largeTrade alert
- position closed: merged with the last snapshot (close payload wins),
  archived, then handed to the alert service

Alerts run on a separate thread pool and never hold up the account queue.
A failing event is reported to on_error (the error tracker) and the worker
keeps going with the next event.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Any

from account_repository import AccountRepository
from streaming_connection_manager import StreamingConnectionManager
from trade_alerts import TradeAlertService
from trade_archiver import TradeArchiver, ArchiveContext, SignalDefaults
from trade_history import TradeHistoryRepository

logger = logging.getLogger(__name__)

_STOP = object()


class PositionEventRouter:
    """Per-account ordered processing of position events"""

    def __init__(self, archiver: TradeArchiver, accounts: AccountRepository,
                 alerts: Optional[TradeAlertService] = None,
                 history: Optional[TradeHistoryRepository] = None,
                 connections: Optional[StreamingConnectionManager] = None,
                 max_alert_workers: int = 4,
                 on_error: Optional[Callable[[str, str], Any]] = None):
        self.archiver = archiver
        self.accounts = accounts
        self.alerts = alerts
        self.history = history or TradeHistoryRepository(accounts.session_factory)
        self.connections = connections
        self.on_error = on_error
        self._queues: Dict[str, queue.Queue] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._open_positions: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()
        self._alert_pool = ThreadPoolExecutor(max_workers=max_alert_workers, thread_name_prefix='trade-alerts')
        self._running = True

    # ==================== FEED CALLBACKS ====================

    def on_position_updated(self, account_id: str, position: Dict[str, Any]):
        self._enqueue(account_id, ('updated', position, None))

    def on_position_closed(self, account_id: str, position: Dict[str, Any],
                           signal: Optional[SignalDefaults] = None):
        self._enqueue(account_id, ('closed', position, signal))

    def _enqueue(self, account_id: str, item):
        if not self._running:
            logger.warning(f"Router stopped, event for {account_id} dropped")
            return
        if self.connections is not None:
            self.connections.record_event(account_id)

        with self._lock:
            events = self._queues.get(account_id)
            if events is None:
                events = queue.Queue()
                worker = threading.Thread(
                    target=self._run, args=(account_id, events),
                    name=f"positions-{account_id}", daemon=True
                )
                self._queues[account_id] = events
                self._workers[account_id] = worker
                worker.start()
        events.put(item)

    def _run(self, account_id: str, events: queue.Queue):
        while True:
            item = events.get()
            try:
                if item is _STOP:
                    return
                kind, position, signal = item
                if kind == 'updated':
                    self._handle_update(account_id, position)
                else:
                    self._handle_close(account_id, position, signal)
            except Exception as e:
                logger.error(f"❌ Position event for {account_id} failed: {e}", exc_info=True)
                self._report_error(account_id, f"Position event handling failed: {e}")
            finally:
                events.task_done()

    def _report_error(self, account_id: str, message: str):
        if self.on_error is None:
            return
        try:
            self.on_error(account_id, message)
        except Exception as e:
            logger.error(f"❌ Error tracking for {account_id} failed: {e}")

    # ==================== HANDLERS ====================

    def _handle_update(self, account_id: str, position: Dict[str, Any]):
        position_id = str(position.get('id') or position.get('positionId') or '')
        if not position_id:
            logger.warning(f"Position update without id for {account_id} ignored")
            return

        snapshots = self._open_positions.setdefault(account_id, {})
        is_new = position_id not in snapshots
        merged = dict(snapshots.get(position_id, {}))
        merged.update({k: v for k, v in position.items() if v is not None})
        snapshots[position_id] = merged

        if is_new and self.alerts is not None:
            account = self.accounts.get_account(account_id)
            if account is not None:
                view = {
                    'position_id': position_id,
                    'account_id': account_id,
                    'symbol': merged.get('symbol'),
                    'side': merged.get('type'),
                    'volume': merged.get('volume'),
                    'profit': merged.get('profit'),
                    'is_closed': False,
                }
                self._alert_pool.submit(self.alerts.process_trade, view, account)

    def _handle_close(self, account_id: str, position: Dict[str, Any], signal: Optional[SignalDefaults]):
        position_id = str(position.get('id') or position.get('positionId') or '')
        if not position_id:
            logger.warning(f"Position close without id for {account_id} ignored")
            return

        snapshot = self._open_positions.get(account_id, {}).pop(position_id, {})
        merged = dict(snapshot)
        merged.update({k: v for k, v in position.items() if v is not None})

        account = self.accounts.get_account(account_id)
        context = ArchiveContext(
            account_id=account_id,
            user_id=account.user_id if account else None,
            signal=signal,
        )
        self.archiver.archive(position_id, merged, context)

        if self.alerts is not None and account is not None:
            trade = self.history.get_trade(position_id)
            if trade is not None:
                self._alert_pool.submit(self.alerts.process_trade, trade, account)

    # ==================== LIFECYCLE ====================

    def drain(self):
        """Block until all queued events were processed"""
        with self._lock:
            queues = list(self._queues.values())
        for events in queues:
            events.join()

    def open_positions(self, account_id: str) -> Dict[str, Dict[str, Any]]:
        return dict(self._open_positions.get(account_id, {}))

    def stop(self, wait: bool = True):
        self._running = False
        with self._lock:
            queues = list(self._queues.items())
            workers = dict(self._workers)
        for account_id, events in queues:
            events.put(_STOP)
        if wait:
            for worker in workers.values():
                worker.join(timeout=5)
        self._alert_pool.shutdown(wait=wait)
        logger.info("Position event router stopped")
