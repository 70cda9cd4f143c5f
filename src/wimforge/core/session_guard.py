"""
WimForge Servicing Session Guard
Serializes access to the exclusive image-servicing engine (DISM)
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Sequence, TypeVar

from wimforge.core.errors import OperationCancelledError
from wimforge.core.models import ProcessResult, ProgressDetail
from wimforge.core.process_runner import ProcessExecutor, ProgressCallback


T = TypeVar("T")

DISM_EXECUTABLE = "dism.exe"


def _ignore_progress(_detail: ProgressDetail):
    pass


class ServicingSession:
    """Handle to the servicing engine, valid only inside a guarded block"""

    def __init__(self, executor: ProcessExecutor, executable: str):
        self.executor = executor
        self.executable = executable

    def run(self, arguments: Sequence[str],
            progress: Optional[ProgressCallback] = None) -> ProcessResult:
        # DISM must always be given a progress sink
        callback = progress if progress is not None else _ignore_progress
        return self.executor.run_with_progress(
            self.executable, arguments, progress=callback
        )


class ServicingSessionGuard:
    """
    Single-slot FIFO lock around the servicing engine.

    Waiters are served in arrival order. A cancel_event is honoured only
    while waiting; once the guarded block starts it runs to completion and
    the slot is always released.
    """

    def __init__(self, executor: Optional[ProcessExecutor] = None,
                 executable: str = DISM_EXECUTABLE, poll_interval: float = 0.1):
        self.logger = logging.getLogger(__name__)
        self.executor = executor or ProcessExecutor()
        self.executable = executable
        self.poll_interval = poll_interval

        self._condition = threading.Condition()
        self._next_ticket = 0
        self._serving = 0
        self._held = False
        self._cancelled_tickets = set()

    @property
    def is_held(self) -> bool:
        with self._condition:
            return self._held

    def _acquire(self, cancel_event: Optional[threading.Event]):
        with self._condition:
            ticket = self._next_ticket
            self._next_ticket += 1
            try:
                while self._held or self._serving != ticket:
                    if cancel_event is not None and cancel_event.is_set():
                        raise OperationCancelledError("Cancelled while waiting for the servicing session")
                    self._condition.wait(self.poll_interval if cancel_event is not None else None)
            except BaseException:
                self._abandon(ticket)
                raise
            self._held = True
            self.logger.debug(f"Servicing session acquired (ticket {ticket})")

    def _abandon(self, ticket: int):
        # Called with the condition held; a cancelled ticket must not block later ones
        if self._serving == ticket:
            self._serving += 1
        else:
            self._cancelled_tickets.add(ticket)
        self._skip_cancelled()
        self._condition.notify_all()

    def _skip_cancelled(self):
        while self._serving in self._cancelled_tickets:
            self._cancelled_tickets.discard(self._serving)
            self._serving += 1

    def _release(self):
        with self._condition:
            self._held = False
            self._serving += 1
            self._skip_cancelled()
            self._condition.notify_all()
            self.logger.debug("Servicing session released")

    @contextmanager
    def session(self, cancel_event: Optional[threading.Event] = None) -> Iterator[ServicingSession]:
        """Acquire the engine, yield a session and release on exit"""
        self._acquire(cancel_event)
        try:
            yield ServicingSession(self.executor, self.executable)
        finally:
            self._release()

    def execute(self, operation: Callable[[ServicingSession], T],
                cancel_event: Optional[threading.Event] = None) -> T:
        """Run operation with exclusive access to the engine"""
        with self.session(cancel_event) as servicing:
            return operation(servicing)
