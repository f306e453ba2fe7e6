from __future__ import annotations

import logging
import threading
from typing import Callable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECONDS = 10.0

ACTIVATE_MEMBERS_SQL = """
UPDATE users
SET is_boa_member = TRUE
WHERE membership_no IS NOT NULL
  AND TRIM(membership_no) <> ''
  AND (is_boa_member IS NULL OR is_boa_member = FALSE)
"""

DEACTIVATE_MEMBERS_SQL = """
UPDATE users
SET is_boa_member = FALSE
WHERE (membership_no IS NULL OR TRIM(membership_no) = '')
  AND (is_boa_member IS NULL OR is_boa_member = TRUE)
"""


class MembershipStatusReconciler:
    """Keeps ``users.is_boa_member`` in line with ``users.membership_no``.

    One instance is created at application startup and owns its scheduler
    thread. A tick that fires while a pass is still running is skipped.
    """

    def __init__(self, session_factory: Callable[[], Session], interval_seconds: float = 5.0):
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    @property
    def is_scheduled(self) -> bool:
        return self._thread is not None

    def reconcile(self) -> dict[str, int] | None:
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Membership status sync already in progress; tick skipped")
            return None

        try:
            db = self._session_factory()
            try:
                activated = db.execute(text(ACTIVATE_MEMBERS_SQL)).rowcount
                deactivated = db.execute(text(DEACTIVATE_MEMBERS_SQL)).rowcount
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                logger.exception("Membership status sync failed")
                return None
            finally:
                db.close()
        finally:
            self._pass_lock.release()

        if activated > 0:
            logger.info("Membership status sync: activated %s member(s)", activated)
        if deactivated > 0:
            logger.info("Membership status sync: deactivated %s non-member(s)", deactivated)
        return {"activated": activated, "deactivated": deactivated}

    def _tick(self) -> None:
        try:
            self.reconcile()
        except Exception:
            logger.exception("Membership status sync tick failed; retrying next interval")

    def _run(self, stop_event: threading.Event) -> None:
        self._tick()
        while not stop_event.wait(self.interval_seconds):
            self._tick()

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="membership-status-sync",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread

        logger.info("Membership status sync started (every %ss)", self.interval_seconds)
        thread.start()

    def stop(self) -> None:
        with self._state_lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None

        if thread is None or stop_event is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=STOP_TIMEOUT_SECONDS)
        logger.info("Membership status sync stopped")
