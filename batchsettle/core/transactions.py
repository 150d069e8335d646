"""
batchsettle/core/transactions.py

Serialization, event buffering and rollback for every mutating call.

All components of one settlement system share a TransactionManager. Its
re-entrant lock gives strict global serialization: a call into the ledger
made from inside a settlement call joins the outer transaction instead of
starting a new one.

Inside a transaction:
    - time is frozen at the value read when the outermost call started
    - events are checked and buffered, not written
    - state about to change is registered with remember() / remember_attr()

On commit of the outermost call the buffered events are flushed to the
journal as one unit. On any exception, including a failed journal write
at commit, the state registered since the failing call began is restored
and its events are discarded. A rejected call leaves nothing behind.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, MutableMapping, Optional, Tuple

from batchsettle.core.emitter import EventJournal
from batchsettle.core.models import check_event
from batchsettle.core.time import Clock, SystemClock, wire_timestamp

log = logging.getLogger(__name__)

_PendingEvent = Tuple[str, str, Dict[str, Any]]


class TransactionManager:

    def __init__(self, journal: EventJournal, clock: Optional[Clock] = None) -> None:
        self.journal = journal
        self.clock   = clock or SystemClock()

        self._lock:    threading.RLock          = threading.RLock()
        self._depth:   int                      = 0
        self._pending: List[_PendingEvent]      = []
        self._undo:    List[Callable[[], None]] = []
        self._now:     Optional[int]            = None
        self._owner:   Optional[int]            = None

    @contextmanager
    def atomic(self) -> Iterator["TransactionManager"]:
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._owner   = threading.get_ident()
                self._pending = []
                self._undo    = []
                self._now     = self.clock.now()
            mark      = len(self._pending)
            undo_mark = len(self._undo)
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                self._rollback(undo_mark)
                del self._pending[mark:]
                if outermost:
                    self._now = None
                raise
            self._depth -= 1
            if outermost:
                try:
                    self._commit()
                except BaseException:
                    self._rollback(0)
                    self._pending = []
                    self._now = None
                    raise
                self._undo = []

    def now(self) -> int:
        """Transaction time when inside atomic(), clock time otherwise."""
        if self.in_transaction and self._now is not None:
            return self._now
        return self.clock.now()

    def record(self, event_type: str, source: str, payload: Dict[str, Any]) -> None:
        if not self.in_transaction:
            raise RuntimeError("record() called outside atomic()")
        check_event(event_type, payload)
        self._pending.append((event_type, source, payload))

    def remember(self, mapping: MutableMapping, key: Any) -> None:
        """
        Save mapping[key] so a rollback restores it, or removes the key if
        it is absent now. Call before the entry is changed. No-op outside
        a transaction.
        """
        if not self.in_transaction:
            return
        if key in mapping:
            saved = copy.deepcopy(mapping[key])
            self._undo.append(lambda: mapping.__setitem__(key, saved))
        else:
            self._undo.append(lambda: mapping.pop(key, None))

    def remember_attr(self, obj: Any, *names: str) -> None:
        """Save attributes of obj so a rollback restores them."""
        if not self.in_transaction:
            return
        for name in names:
            saved = copy.deepcopy(getattr(obj, name))
            self._undo.append(lambda name=name, saved=saved: setattr(obj, name, saved))

    @property
    def in_transaction(self) -> bool:
        """True on the thread that holds the current transaction."""
        return self._depth > 0 and self._owner == threading.get_ident()

    def _rollback(self, mark: int) -> None:
        undone = len(self._undo) - mark
        while len(self._undo) > mark:
            self._undo.pop()()
        if undone:
            log.debug("rolled back %d change(s)", undone)

    def _commit(self) -> None:
        timestamp = wire_timestamp(self._now)
        if self._pending:
            self.journal.emit_all(self._pending, timestamp)
            log.debug("committed %d event(s)", len(self._pending))
        self._pending = []
        self._now = None
