"""Polling listener that forwards on-chain events to registered handlers."""

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, List, Optional

from .errors import is_chain_connection_error

log = logging.getLogger(__name__)


class ChainEvent:
    """Fan-out of chain events to handlers, each called in its own thread."""

    def __init__(self):
        self._handlers: List[Callable[[Any], None]] = []

    def register(self, handler: Callable[[Any], None]) -> None:
        log.debug("Registering Flow event handler")
        self._handlers.append(handler)

    def trigger(self, payload: Any) -> None:
        if not self._handlers:
            log.warning("No listeners for chain events")
        for handler in list(self._handlers):
            threading.Thread(target=handler, args=(payload,), daemon=True).start()


chain_event = ChainEvent()


@dataclass
class ListenerStatus:
    latest_height: int = 0


class LockError(Exception):
    """The listener status is locked by someone else."""


class MemoryStatusStore:
    """Keeps listener status in memory; changes commit only if fn succeeds."""

    def __init__(self, status: Optional[ListenerStatus] = None):
        self.status = status or ListenerStatus()
        self._lock = threading.Lock()

    def locked_status(self, fn: Callable[[ListenerStatus], None]) -> None:
        if not self._lock.acquire(blocking=False):
            raise LockError("listener status is locked")
        try:
            working = replace(self.status)
            fn(working)
            self.status = working
        finally:
            self._lock.release()


class Listener:
    """Fetches events block range by block range on a fixed interval."""

    def __init__(self, client, store, get_types, max_blocks, interval,
                 starting_height=0, system_service=None):
        self.client = client
        self.store = store
        self.get_types = get_types
        self.max_blocks = max_blocks
        self.interval = interval
        self.starting_height = starting_height
        self.system_service = system_service
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _run(self, start: int, end: int) -> None:
        events = []
        for event_type in self.get_types():
            count = 0
            for block in self.client.get_events_for_height_range(event_type, start, end):
                count += len(block.events)
                events.extend(block.events)
            log.debug("Fetching events type=%s start=%d end=%d count=%d",
                      event_type, start, end, count)
        for event in events:
            chain_event.trigger(event)

    def _init_height(self) -> None:
        def fn(status: ListenerStatus) -> None:
            if self.starting_height > 0 and status.latest_height < self.starting_height - 1:
                status.latest_height = self.starting_height - 1
            if status.latest_height == 0:
                status.latest_height = self.client.get_latest_block_header(True).height

        self.store.locked_status(fn)

    def _halted(self) -> bool:
        return self.system_service.is_halted() if self.system_service else False

    def poll(self) -> None:
        """Run one listening round, handling errors as the background loop does."""
        try:
            if self._halted():
                log.debug("System halted")
                return
        except Exception as err:
            log.warning("Could not get system settings from DB: %s", err)
            return

        def fn(status: ListenerStatus) -> None:
            latest = self.client.get_latest_block_header(True)
            if latest.height > status.latest_height:
                start = status.latest_height + 1
                end = min(latest.height, start + self.max_blocks)
                self._run(start, end)
                status.latest_height = end

        try:
            self.store.locked_status(fn)
        except Exception as err:
            if is_chain_connection_error(err):
                if self.system_service is not None:
                    log.warning("Unable to connect to chain, pausing system: %s", err)
                    try:
                        self.system_service.pause()
                    except Exception as pause_err:
                        log.warning("Unable to pause system: %s", pause_err)
                else:
                    log.warning("Unable to connect to chain")
                return
            log.warning("Error while handling Flow events: %s", err)
            if "key not found" in str(err):
                log.warning('"key not found" error indicates data is not available at '
                            "this height, please manually set correct starting height")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            self.poll()

    def start(self) -> "Listener":
        if self._thread is not None:
            return self
        try:
            self._init_height()
        except LockError:
            pass
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()
        log.debug("Started Flow event listener")
        return self

    def stop(self) -> None:
        log.debug("Stopping Flow event listener")
        self._stop.set()
        if self._thread is not None:
            self._thread.join()