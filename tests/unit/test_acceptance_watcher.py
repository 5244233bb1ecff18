"""Tests for the acceptance-prompt watcher."""

import threading
from unittest.mock import MagicMock

import pytest

from upfyn_agents.session.watcher import ACCEPTANCE_RESPONSES, AcceptanceWatcher


def _watcher(sessions, **kwargs):
    kwargs.setdefault("initial_delay", 0)
    kwargs.setdefault("interval", 0)
    kwargs.setdefault("max_attempts", 5)
    return AcceptanceWatcher(sessions, "task-1", **kwargs)


@pytest.mark.parametrize("screen, response", [
    ("Do you accept?\n> Yes, I accept\n  No, exit", "y"),
    ("Do you want to proceed?", "y"),
    ("I accept the risks of bypassing permissions", "yes"),
])
def test_answers_known_prompts(fake_sessions, screen, response):
    fake_sessions.alive["task-1"] = None
    fake_sessions.output["task-1"] = screen

    assert _watcher(fake_sessions).run() is True

    assert fake_sessions.sent == [("task-1", response)]


def test_first_matching_phrase_wins(fake_sessions):
    fake_sessions.alive["task-1"] = None
    fake_sessions.output["task-1"] = "accept the risks ... Yes, I accept"

    watcher = _watcher(fake_sessions)
    watcher.run()

    assert watcher.answered == ACCEPTANCE_RESPONSES[0][1]
    assert len(fake_sessions.sent) == 1


def test_gives_up_after_max_attempts(fake_sessions):
    fake_sessions.alive["task-1"] = None
    fake_sessions.output["task-1"] = "Thinking..."
    sessions = MagicMock(wraps=fake_sessions)

    assert _watcher(sessions, max_attempts=3).run() is False

    assert sessions.capture_output.call_count == 3
    assert fake_sessions.sent == []


def test_prompt_appearing_later_is_answered(fake_sessions):
    fake_sessions.alive["task-1"] = None
    screens = iter(["starting", "loading", "Yes, I accept"])
    sessions = MagicMock(wraps=fake_sessions)
    sessions.capture_output.side_effect = lambda name, lines: next(screens)

    watcher = _watcher(sessions)

    assert watcher.run() is True
    assert sessions.capture_output.call_count == 3


def test_capture_errors_do_not_stop_polling(fake_sessions):
    fake_sessions.alive["task-1"] = None
    sessions = MagicMock(wraps=fake_sessions)
    sessions.capture_output.side_effect = [RuntimeError("tmux went away"), "Yes, I accept"]

    assert _watcher(sessions).run() is True


def test_stops_when_session_killed(fake_sessions):
    fake_sessions.alive["task-1"] = None
    fake_sessions.kill("task-1")
    sessions = MagicMock(wraps=fake_sessions)

    assert _watcher(sessions, initial_delay=10).run() is False

    sessions.capture_output.assert_not_called()


def test_stop_interrupts_background_thread(fake_sessions):
    fake_sessions.alive["task-1"] = None
    watcher = _watcher(fake_sessions, initial_delay=30)

    thread = watcher.start()
    watcher.stop()
    watcher.join(timeout=5)

    assert not thread.is_alive()
    assert watcher.answered is None


def test_uses_explicit_stop_event(fake_sessions):
    event = threading.Event()
    watcher = _watcher(fake_sessions, stop_event=event)
    assert watcher.stop_event is event


def test_no_wait_after_last_attempt(fake_sessions):
    fake_sessions.alive["task-1"] = None
    fake_sessions.output["task-1"] = "Thinking..."
    stop_event = MagicMock(spec=threading.Event)
    stop_event.wait.return_value = False

    assert _watcher(fake_sessions, max_attempts=3, interval=2.0, stop_event=stop_event).run() is False

    # Initial delay, then only the gaps between attempts
    assert [c.args[0] for c in stop_event.wait.call_args_list] == [0, 2.0, 2.0]
