"""Unit tests for the selection-aware frame buffer."""

from apropos.core.frame_buffer import Frame, FrameBuffer


def test_frames_pass_through_without_selection():
    buffer = FrameBuffer(limit=4)
    frame = Frame("output", "hi")

    assert buffer.offer(frame) is frame
    assert len(buffer) == 0


def test_selection_holds_output_and_flushes_in_order():
    buffer = FrameBuffer(limit=4)
    buffer.set_active(True)

    for index in range(3):
        assert buffer.offer(Frame("output", str(index))) is None

    flushed = buffer.set_active(False)
    assert [frame.data for frame in flushed] == ["0", "1", "2"]
    assert len(buffer) == 0


def test_control_frames_bypass_selection():
    buffer = FrameBuffer(limit=4)
    buffer.set_active(True)
    error = Frame("error", "boom")

    assert buffer.offer(error) is error
    assert buffer.offer(Frame("screen", "s")) is None


def test_overflow_drops_oldest():
    buffer = FrameBuffer(limit=2)
    buffer.set_active(True)

    for data in ("a", "b", "c"):
        buffer.offer(Frame("output", data))

    assert buffer.dropped == 1
    assert [frame.data for frame in buffer.set_active(False)] == ["b", "c"]
    assert buffer.dropped == 0


def test_repeated_selection_updates_do_not_flush():
    buffer = FrameBuffer(limit=4)
    buffer.set_active(True)
    buffer.offer(Frame("output", "a"))

    assert buffer.set_active(True) == []
    assert len(buffer) == 1
    assert buffer.set_active(False) != []
    assert buffer.set_active(False) == []


def test_to_message():
    assert Frame("screen", "x").to_message() == {"type": "screen", "data": "x"}
