"""Heuristic detection of agent questions and idle-after-input.

Agent CLIs have no protocol for "waiting on you"; the detector reads pane text.
extract_agent_question() is the pure heuristic. ActivityDetector holds the per-session
timestamps and fingerprints, polls panes on an interval and publishes alerts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from apropos.config import DetectorConfig, config
from apropos.constants import PROMPT_LEADERS, SHELL_KIND
from apropos.core import tmux_bridge
from apropos.core.events import EventHub, EventType
from apropos.core.models import Session
from apropos.core.screen import fingerprint, normalize_pane_text

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def extract_agent_question(
    text: str,
    *,
    scan_lines: int = 14,
    min_length: int = 8,
    max_length: int = 260,
) -> Optional[str]:
    """Find the newest line that looks like a question addressed to the user.

    Args:
        text: Raw pane or output text (ANSI allowed)
        scan_lines: How many trailing non-empty lines to consider
        min_length: Shortest qualifying line
        max_length: Longest qualifying line

    Returns:
        The question line, or None
    """
    lines = [line.strip() for line in normalize_pane_text(text).split("\n")]
    lines = [line for line in lines if line][-scan_lines:]
    for line in reversed(lines):
        if not min_length <= len(line) <= max_length:
            continue
        if not line.endswith("?"):
            continue
        if line.startswith(PROMPT_LEADERS):
            continue
        return line
    return None


@dataclass
class ActivityState:
    tail: str = ""
    last_signature: str = ""
    last_input_at: float = 0.0
    last_notified_input_at: float = 0.0
    last_pane_fingerprint: str = ""
    last_pane_change_at: float = 0.0
    last_remote_poll_at: float = 0.0


def is_agent_session(session: Session) -> bool:
    return session.kind != SHELL_KIND and session.kind in config.agent_kinds


def _alert_payload(session: Session) -> dict[str, object]:
    return {
        "projectId": session.project_id,
        "projectName": session.project_name,
        "sessionId": session.id,
        "tmuxName": session.tmux_name,
        "kind": session.kind,
        "lastInput": session.last_input or "",
    }


class ActivityDetector:
    """Polls agent panes and publishes question/idle alerts to the event hub."""

    def __init__(
        self,
        sessions: Callable[[], list[Session]],
        events: EventHub,
        settings: Optional[DetectorConfig] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._sessions = sessions
        self._events = events
        self._settings = settings
        self._clock = clock
        self._states: dict[str, ActivityState] = {}
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._stopping = asyncio.Event()

    @property
    def settings(self) -> DetectorConfig:
        return self._settings or config.detector

    def state_for(self, session_id: str) -> Optional[ActivityState]:
        return self._states.get(session_id)

    def _ensure_state(self, session_id: str) -> ActivityState:
        state = self._states.get(session_id)
        if state is None:
            state = ActivityState()
            self._states[session_id] = state
        return state

    def discard(self, session: Session) -> None:
        """Drop state for a session that left the registry."""
        self._states.pop(session.id, None)
        task = self._in_flight.pop(session.id, None)
        if task and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def mark_input(self, session: Session) -> None:
        if not is_agent_session(session):
            return
        now = self._clock()
        state = self._ensure_state(session.id)
        state.last_input_at = now
        state.last_pane_change_at = now

    async def observe_output(self, session: Session, text: str) -> None:
        """Feed streamed output into the rolling tail and check it for a question."""
        if not is_agent_session(session):
            return
        settings = self.settings
        state = self._ensure_state(session.id)
        merged = f"{state.tail}\n{text or ''}"[-settings.merge_chars :]
        state.tail = merged[-settings.tail_chars :]
        await self._check_question(session, state, merged)

    async def observe_pane(self, session: Session, text: str) -> None:
        """Process a full pane capture: question check plus idle tracking."""
        if not is_agent_session(session):
            return
        await self.observe_output(session, text)

        settings = self.settings
        state = self._ensure_state(session.id)
        now = self._clock()
        current = fingerprint(text, settings.fingerprint_chars)
        if current != state.last_pane_fingerprint:
            state.last_pane_fingerprint = current
            state.last_pane_change_at = now

        if not state.last_input_at:
            return
        if state.last_notified_input_at >= state.last_input_at:
            return
        if now - state.last_pane_change_at <= settings.idle_threshold_s:
            return

        state.last_notified_input_at = state.last_input_at
        await self._events.publish(EventType.AGENT_IDLE, _alert_payload(session))

    async def _check_question(self, session: Session, state: ActivityState, text: str) -> None:
        settings = self.settings
        question = extract_agent_question(
            text,
            scan_lines=settings.question_scan_lines,
            min_length=settings.question_min_length,
            max_length=settings.question_max_length,
        )
        if not question:
            return
        signature = f"{session.id}|{question}"
        if signature == state.last_signature:
            return
        state.last_signature = signature
        payload = _alert_payload(session)
        payload["question"] = question
        await self._events.publish(EventType.AGENT_QUESTION, payload)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def tick(self) -> list[asyncio.Task[None]]:
        """Start one capture per due agent session.

        Sessions with a capture still running are skipped so a slow host never
        stalls the loop. Remote sessions are polled on a slower cadence.

        Returns:
            The capture tasks started by this tick
        """
        settings = self.settings
        now = self._clock()
        started: list[asyncio.Task[None]] = []
        for session in self._sessions():
            if not is_agent_session(session):
                continue
            state = self._ensure_state(session.id)

            # Restored sessions already carry input we never saw being typed
            seeded = (session.last_input or "").strip()
            if not state.last_input_at and seeded and seeded.lower() != session.kind.lower():
                state.last_input_at = now
                state.last_pane_change_at = now

            in_flight = self._in_flight.get(session.id)
            if in_flight and not in_flight.done():
                continue

            if session.ssh_host:
                if now - state.last_remote_poll_at < settings.remote_poll_interval_s:
                    continue
                state.last_remote_poll_at = now

            task = asyncio.create_task(self._poll_session(session), name=f"detector:{session.id}")
            self._in_flight[session.id] = task
            started.append(task)
        return started

    async def _poll_session(self, session: Session) -> None:
        settings = self.settings
        try:
            pane = await tmux_bridge.capture_pane(
                session.ssh_host,
                session.tmux_name,
                settings.capture_lines,
                timeout=settings.capture_timeout_s,
            )
            if session.id not in self._states:
                return
            await self.observe_pane(session, pane)
        except asyncio.CancelledError:
            raise
        except Exception as e:  # noqa: BLE001 - one bad session must not stop the detector
            logger.debug("Activity poll failed for %s: %s", session.id, e)
        finally:
            if self._in_flight.get(session.id) is asyncio.current_task():
                self._in_flight.pop(session.id, None)

    async def run(self) -> None:
        """Poll until stop() is called."""
        logger.info("Activity detector started (interval=%.1fs)", self.settings.poll_interval_s)
        self._stopping.clear()
        while not self._stopping.is_set():
            self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.settings.poll_interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("Activity detector stopped")

    async def stop(self) -> None:
        self._stopping.set()
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
