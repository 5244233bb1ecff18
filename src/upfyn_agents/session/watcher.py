"""Answers an agent's start-up confirmation prompt from a background thread."""

import logging
import threading
from typing import Optional, Tuple

from ..utils.error_handling import log_and_ignore
from .manager import SessionManager

logger = logging.getLogger(__name__)

# (phrase seen in the pane, keys to send back), checked in order
ACCEPTANCE_RESPONSES: Tuple[Tuple[str, str], ...] = (
    ("Yes, I accept", "y"),
    ("Do you want to proceed", "y"),
    ("accept the risks", "yes"),
)

CAPTURE_LINES = 10


class AcceptanceWatcher:
    """Poll a session's output and acknowledge the first confirmation prompt.

    Best effort: gives up silently after ``max_attempts`` polls, and stops as
    soon as the session is killed. Only reads the session name, never task
    state.
    """

    def __init__(
        self,
        sessions: SessionManager,
        session_name: str,
        *,
        initial_delay: float = 3.0,
        interval: float = 2.0,
        max_attempts: int = 30,
        stop_event: Optional[threading.Event] = None,
    ):
        self.sessions = sessions
        self.session_name = session_name
        self.initial_delay = initial_delay
        self.interval = interval
        self.max_attempts = max_attempts
        self.stop_event = stop_event or sessions.lifetime(session_name)
        self.answered: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.run,
            name=f"accept-{self.session_name}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> bool:
        """Poll loop. Returns True if a prompt was answered."""
        if self.stop_event.wait(self.initial_delay):
            return False

        for attempt in range(1, self.max_attempts + 1):
            try:
                if self._check_once():
                    return True
            except Exception as e:
                log_and_ignore(
                    e,
                    f"Acceptance check {attempt} for {self.session_name} failed",
                    logger_instance=logger,
                    level=logging.DEBUG,
                )

            if attempt == self.max_attempts:
                break
            if self.stop_event.wait(self.interval):
                logger.debug(f"Session {self.session_name} ended, acceptance watcher stopping")
                return False

        logger.debug(
            f"No confirmation prompt in {self.session_name} after {self.max_attempts} attempts"
        )
        return False

    def _check_once(self) -> bool:
        output = self.sessions.capture_output(self.session_name, CAPTURE_LINES)
        for phrase, response in ACCEPTANCE_RESPONSES:
            if phrase in output:
                logger.info(f"Answering '{phrase}' prompt in {self.session_name}")
                self.sessions.send_keys(self.session_name, response)
                self.answered = response
                return True
        return False
