"""Selection-aware holding queue for terminal frames.

While the browser reports an active text selection, applying output would move the
text under the user's cursor. Frames are held in a bounded FIFO instead and flushed
in arrival order when the selection clears.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BUFFERED_FRAME_TYPES = frozenset({"output", "screen"})


@dataclass(frozen=True)
class Frame:
    type: str
    data: str

    def to_message(self) -> dict[str, str]:
        return {"type": self.type, "data": self.data}


class FrameBuffer:
    """Bounded drop-oldest queue gated by the client's selection state."""

    def __init__(self, limit: int) -> None:
        self._frames: deque[Frame] = deque(maxlen=limit)
        self._active = False
        self.dropped = 0

    @property
    def active(self) -> bool:
        return self._active

    def __len__(self) -> int:
        return len(self._frames)

    def offer(self, frame: Frame) -> Optional[Frame]:
        """Queue the frame while a selection is active.

        Returns:
            The frame when it should be sent now, None when it was queued
        """
        if not self._active or frame.type not in BUFFERED_FRAME_TYPES:
            return frame
        if len(self._frames) == self._frames.maxlen:
            self.dropped += 1
        self._frames.append(frame)
        return None

    def set_active(self, active: bool) -> list[Frame]:
        """Update the selection state.

        Returns:
            Frames to flush, in arrival order (empty unless the selection just cleared)
        """
        was_active = self._active
        self._active = active
        if active or not was_active:
            return []
        flushed = list(self._frames)
        self._frames.clear()
        if self.dropped:
            logger.debug("Selection flush: %d frames, %d dropped", len(flushed), self.dropped)
            self.dropped = 0
        return flushed

    def clear(self) -> None:
        self._frames.clear()
        self.dropped = 0
