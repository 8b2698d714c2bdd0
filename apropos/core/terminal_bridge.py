"""Terminal bridge: one browser WebSocket bound to one tmux session.

Attach mode runs `tmux attach` in a pty and streams its output. When attach is
unavailable the bridge falls back to polling `capture-pane` and replaying input as
discrete `send-keys` calls. Both modes share input classification, selection-aware
frame buffering and scrollback delivery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Coroutine, Optional

from apropos.config import BridgeConfig, config
from apropos.core import tmux_bridge
from apropos.core.activity_detector import ActivityDetector
from apropos.core.errors import BridgeAttachError, ExecutionError, ProtocolError
from apropos.core.frame_buffer import Frame, FrameBuffer
from apropos.core.input_classifier import InputClassifier, parse_input
from apropos.core.models import Session
from apropos.core.pty_attach import PtyAttachment
from apropos.core.screen import diff_screen, split_partial_reset, strip_screen_resets
from apropos.core.session_registry import SessionRegistry
from apropos.core.terminal_protocol import (
    InputMessage,
    ResizeMessage,
    ScrollMessage,
    SelectionMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[dict[str, object]], Awaitable[None]]
AttachFactory = Callable[[Session, int, int], PtyAttachment]

# Input token -> tmux key name for fallback dispatch
_FALLBACK_KEYS = {"enter": "C-m", "backspace": "BSpace"}

# Time allowed for buffered pty output to drain once the attach process exits
_EXIT_DRAIN_S = 0.5


def default_attach_factory(session: Session, cols: int, rows: int) -> PtyAttachment:
    return PtyAttachment(tmux_bridge.attach_argv(session.ssh_host, session.tmux_name), cols=cols, rows=rows)


class TerminalBridge:
    """Streams one session to one client.

    Usage:
        bridge = TerminalBridge(session, send, registry=..., classifier=..., detector=...)
        await bridge.start()
        await bridge.handle_message(raw)  # for each client frame
        await bridge.close()
    """

    def __init__(
        self,
        session: Session,
        send: SendFn,
        *,
        registry: SessionRegistry,
        classifier: InputClassifier,
        detector: ActivityDetector,
        attach_factory: AttachFactory = default_attach_factory,
        settings: Optional[BridgeConfig] = None,
    ) -> None:
        self.session = session
        self._send_fn = send
        self._registry = registry
        self._classifier = classifier
        self._detector = detector
        self._attach_factory = attach_factory
        self._settings = settings or config.bridge

        self.mode: Optional[str] = None  # "attach" | "fallback"
        self._attachment: Optional[PtyAttachment] = None
        self._frames = FrameBuffer(self._settings.selection_queue_limit)
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._closed_event = asyncio.Event()

        # attach mode
        self._first_output_seen = False
        self._pending_resize: Optional[tuple[int, int]] = None
        self._history_sent = False
        self._output_carry = ""

        # fallback mode
        self._last_screen = ""
        self._render_wakeup = asyncio.Event()
        self._render_timer: Optional[asyncio.TimerHandle] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _tracked(self) -> bool:
        """Whether the session is still in the registry."""
        return self._registry.get(self.session.id) is not None

    def _spawn(self, coro: Coroutine[object, object, None], name: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"{name}:{self.session.id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Bridge task %s failed: %s", task.get_name(), exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, message: dict[str, object]) -> None:
        if self._closed:
            return
        try:
            await self._send_fn(message)
        except Exception as e:  # noqa: BLE001 - socket gone; tear down this bridge only
            logger.info("Send to client failed for %s, closing bridge: %s", self.session.id, e)
            await self.close()

    async def _emit(self, frame_type: str, data: str) -> None:
        frame = self._frames.offer(Frame(frame_type, strip_screen_resets(data)))
        if frame is not None:
            await self._send(frame.to_message())

    async def send_error(self, message: str) -> None:
        await self._send({"type": "error", "message": message})

    async def _send_history(self) -> None:
        """Send scrollback once per connection."""
        if self._history_sent or self._closed:
            return
        self._history_sent = True
        try:
            snapshot = await tmux_bridge.capture_pane(
                self.session.ssh_host, self.session.tmux_name, self._settings.history_lines
            )
        except ExecutionError as e:
            logger.warning("History capture failed for %s: %s", self.session.id, e)
            return
        if snapshot:
            await self._send({"type": "history", "data": strip_screen_resets(snapshot)})

    async def _send_history_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._send_history()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Prepare the tmux session and start streaming in attach or fallback mode."""
        session = self.session
        await tmux_bridge.configure_embedded_session(session.ssh_host, session.tmux_name)
        try:
            await self._start_attach()
        except BridgeAttachError as e:
            logger.info("Attach unavailable for %s (%s), using fallback mode", session.id, e)
            await self._start_fallback()

    async def _start_attach(self) -> None:
        if not self._settings.attach_enabled:
            raise BridgeAttachError("attach disabled by configuration")

        attachment = self._attach_factory(self.session, self._settings.default_cols, self._settings.default_rows)
        await attachment.start()
        self._attachment = attachment
        self.mode = "attach"
        logger.info("Attached to %s (pid=%s)", self.session.id, attachment.pid)

        try:
            pane = await tmux_bridge.capture_pane(
                self.session.ssh_host, self.session.tmux_name, self._settings.capture_lines
            )
        except ExecutionError as e:
            logger.warning("Initial screen capture failed for %s: %s", self.session.id, e)
        else:
            await self._emit("screen", pane)
        if self._closed:
            return

        reader = self._spawn(self._pump_attach_output(attachment), "attach-reader")
        self._spawn(self._watch_attach_exit(attachment, reader), "attach-exit")
        # Some sessions never redraw promptly; history goes out by the deadline regardless
        self._spawn(self._send_history_after(self._settings.history_deadline_s), "history-deadline")

    async def _pump_attach_output(self, attachment: PtyAttachment) -> None:
        while not self._closed:
            chunk = await attachment.read()
            if chunk is None:
                if self._output_carry:
                    await self._emit("output", self._output_carry)
                    self._output_carry = ""
                return
            data, self._output_carry = split_partial_reset(self._output_carry + chunk)
            if data:
                await self._emit("output", data)
            if self._tracked():
                await self._detector.observe_output(self.session, chunk)
            if not self._first_output_seen:
                self._on_initial_redraw(attachment)

    def _on_initial_redraw(self, attachment: PtyAttachment) -> None:
        self._first_output_seen = True
        if self._pending_resize:
            cols, rows = self._pending_resize
            self._pending_resize = None
            self._apply_resize(attachment, cols, rows)
        # After the redraw so tmux's own reset sequences cannot wipe the scrollback
        self._spawn(self._send_history_after(self._settings.history_delay_s), "history")

    def _apply_resize(self, attachment: PtyAttachment, cols: int, rows: int) -> None:
        try:
            attachment.resize(cols, rows)
        except OSError as e:
            logger.debug("Resize of %s failed: %s", self.session.id, e)

    async def _watch_attach_exit(self, attachment: PtyAttachment, reader: asyncio.Task[None]) -> None:
        exit_code, signal_number = await attachment.wait()
        await asyncio.wait({reader}, timeout=_EXIT_DRAIN_S)
        logger.info("Attach process for %s exited (code=%s, signal=%s)", self.session.id, exit_code, signal_number)
        await self._send({"type": "closed", "exitCode": exit_code, "signal": signal_number})
        await self.close()

    async def _start_fallback(self) -> None:
        self.mode = "fallback"
        await self._send_history()
        await self._render()
        self._spawn(self._poll_loop(), "fallback-poll")

    async def _poll_loop(self) -> None:
        interval = self._settings.poll_interval_s
        while not self._closed:
            try:
                await asyncio.wait_for(self._render_wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._render_wakeup.clear()
            await self._render()

    async def _render(self) -> None:
        if self._closed:
            return
        try:
            raw = await tmux_bridge.capture_pane(
                self.session.ssh_host, self.session.tmux_name, self._settings.capture_lines
            )
        except ExecutionError as e:
            logger.debug("Fallback capture failed for %s: %s", self.session.id, e)
            return
        diff = diff_screen(self._last_screen, raw)
        if not diff.changed:
            return
        self._last_screen = diff.text
        await self._emit("screen", diff.text)
        if self._tracked():
            await self._detector.observe_output(self.session, diff.text)

    def _schedule_render(self) -> None:
        if self._closed:
            return
        if self._render_timer is not None:
            self._render_timer.cancel()
        loop = asyncio.get_running_loop()
        self._render_timer = loop.call_later(self._settings.input_render_delay_s, self._render_wakeup.set)

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self) -> None:
        """Stop streaming, kill the attach process and drop queued frames."""
        if self._closed:
            return
        self._closed = True
        self._frames.clear()
        self._output_carry = ""
        if self._render_timer is not None:
            self._render_timer.cancel()
            self._render_timer = None

        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current and not task.done()]
        for task in tasks:
            task.cancel()
        if self._attachment is not None:
            await self._attachment.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._closed_event.set()
        logger.debug("Bridge for %s closed", self.session.id)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str) -> None:
        """Handle one text frame from the client. Malformed frames are dropped."""
        if self._closed:
            return
        try:
            message = parse_client_message(raw)
        except ProtocolError as e:
            logger.debug("Dropping client message for %s: %s", self.session.id, e)
            return

        if isinstance(message, InputMessage):
            await self.handle_input(message.data)
        elif isinstance(message, ResizeMessage):
            self.handle_resize(message.cols, message.rows)
        elif isinstance(message, SelectionMessage):
            await self.handle_selection(message.active)
        elif isinstance(message, ScrollMessage):
            await self.handle_scroll(message.lines)

    async def handle_input(self, data: str) -> None:
        # A session removed from the registry keeps no pending-input or activity state
        if self._tracked():
            committed = self._classifier.ingest(self.session.id, data)
            if committed:
                self._registry.set_last_input(self.session.id, committed)
                self._detector.mark_input(self.session)

        if self.mode == "attach" and self._attachment is not None:
            try:
                await self._attachment.write(data)
            except OSError as e:
                logger.info("Write to attach process for %s failed: %s", self.session.id, e)
            return

        await self._dispatch_fallback_input(data)
        self._schedule_render()

    async def _dispatch_fallback_input(self, data: str) -> None:
        host, name = self.session.ssh_host, self.session.tmux_name
        try:
            for token in parse_input(data):
                if token.type == "text":
                    await tmux_bridge.send_literal(host, name, token.value)
                elif token.type == "key":
                    await tmux_bridge.send_key(host, name, token.value)
                else:
                    await tmux_bridge.send_key(host, name, _FALLBACK_KEYS[token.type])
        except ExecutionError as e:
            logger.warning("Fallback input for %s failed: %s", self.session.id, e)
            await self.send_error(f"Input could not be delivered: {e}")

    def handle_resize(self, cols: int, rows: int) -> None:
        if self.mode != "attach" or self._attachment is None:
            return
        if not self._first_output_seen:
            # Applied after the initial redraw so tmux redraws only once
            self._pending_resize = (cols, rows)
            return
        self._apply_resize(self._attachment, cols, rows)

    async def handle_selection(self, active: bool) -> None:
        for frame in self._frames.set_active(active):
            await self._send(frame.to_message())

    async def handle_scroll(self, lines: int) -> None:
        try:
            await tmux_bridge.scroll_history(self.session.ssh_host, self.session.tmux_name, lines)
        except ExecutionError as e:
            logger.warning("Scroll for %s failed: %s", self.session.id, e)
            return
        if self.mode == "fallback":
            self._schedule_render()
