"""Movement, frame selection and streaming of the sprite."""

import time

import numpy as np
import pytest
from PIL import Image

from pacflut import Coordinates, FrameBank, SpriteStreamer, connect, encode_frame, get_canvas_size
from pacflut_control import Direction


@pytest.fixture
def make_streamer(bank, make_clock, make_sink):
    """Build a streamer on a 100x100 canvas with one draw per tick and a frozen clock."""
    def _make(canvas_size=(100, 100), **kwargs):
        kwargs.setdefault("repeats", 1)
        kwargs.setdefault("clock", make_clock())
        sink = kwargs.pop("sink") if "sink" in kwargs else make_sink()
        return SpriteStreamer(sink, bank, canvas_size, **kwargs)
    return _make


class TestMovement:

    def test_starts_facing_right(self, make_streamer):
        assert make_streamer().facing is Direction.RIGHT

    def test_one_tick_moves_one_pixel_right(self, make_streamer):
        streamer = make_streamer()
        streamer.tick()
        assert streamer.position == Coordinates(1, 0, (100, 100))

    def test_full_lap_wraps_exactly(self, make_streamer):
        streamer = make_streamer()
        for _ in range(100):
            streamer.tick()
        assert streamer.position == Coordinates(0, 0, (100, 100))

    @pytest.mark.parametrize("direction, expected", [
        (Direction.LEFT, (99, 0)),
        (Direction.UP, (0, 79)),
        (Direction.DOWN, (0, 1)),
    ])
    def test_moves_and_wraps_in_every_direction(self, make_streamer, channel, direction, expected):
        streamer = make_streamer(canvas_size=(100, 80), channel=channel)
        channel.send(direction)
        streamer.tick()
        assert (streamer.position.x, streamer.position.y) == expected

    def test_start_position_is_wrapped_into_canvas(self, make_streamer):
        streamer = make_streamer(start=(150, 30), canvas_size=(100, 20))
        assert streamer.position == Coordinates(50, 10, (100, 20))


class TestLatching:

    def test_direction_persists_without_input(self, make_streamer, channel):
        streamer = make_streamer(channel=channel)
        channel.send(Direction.DOWN)
        streamer.tick()
        streamer.tick()
        streamer.tick()
        assert streamer.facing is Direction.DOWN
        assert streamer.position == Coordinates(0, 3, (100, 100))

    def test_oldest_policy_applies_one_event_per_tick(self, make_streamer, channel):
        streamer = make_streamer(channel=channel)
        channel.send(Direction.UP)
        channel.send(Direction.LEFT)
        streamer.tick()
        assert streamer.facing is Direction.UP
        streamer.tick()
        assert streamer.facing is Direction.LEFT

    def test_latest_policy_skips_to_newest_event(self, make_streamer, channel):
        streamer = make_streamer(channel=channel, drain="latest")
        channel.send(Direction.UP)
        channel.send(Direction.LEFT)
        streamer.tick()
        assert streamer.facing is Direction.LEFT
        assert channel.try_receive() is None

    def test_negative_stats_interval_is_rejected(self, make_streamer):
        with pytest.raises(ValueError):
            make_streamer(stats_interval=-1)

    def test_unknown_policy_is_rejected(self, make_streamer):
        with pytest.raises(ValueError):
            make_streamer(drain="newest")


class TestDrawing:

    def test_repeats_draws_per_tick(self, make_streamer, make_sink):
        sink = make_sink()
        streamer = make_streamer(sink=sink, repeats=10)
        streamer.tick()
        assert len(sink.payloads) == 10
        assert all(payload.count(b"\n") == 16 for payload in sink.payloads)
        assert streamer.frames_sent == 10
        assert streamer.pixels_sent == 160

    def test_frame_follows_elapsed_time(self, make_streamer, make_sink, make_clock, bank):
        clock = make_clock()
        sink = make_sink()
        streamer = make_streamer(sink=sink, clock=clock, frame_duration_ms=100)
        streamer.start_time = 0.0
        clock.now = 0.25
        streamer.tick()

        expected = encode_frame(bank.frames_for(Direction.RIGHT)[2], streamer.position)
        assert sink.payloads == [expected]

    def test_frame_does_not_depend_on_draw_count(self, make_streamer, make_sink, make_clock, bank):
        sink = make_sink()
        streamer = make_streamer(sink=sink, clock=make_clock(start=5.0), repeats=7)
        streamer.tick()
        streamer.tick()
        frame = bank.frames_for(Direction.RIGHT)[0]
        assert sink.payloads[:7] == [encode_frame(frame, Coordinates(1, 0, (100, 100)))] * 7
        assert sink.payloads[7:] == [encode_frame(frame, Coordinates(2, 0, (100, 100)))] * 7

    def test_frame_changes_within_a_tick(self, make_streamer, make_sink, make_clock, bank):
        sink = make_sink()
        streamer = make_streamer(sink=sink, clock=make_clock(step=0.1),
                                 frame_duration_ms=100, repeats=3)
        streamer.tick()
        frames = bank.frames_for(Direction.RIGHT)
        position = streamer.position
        assert sink.payloads == [encode_frame(frames[i], position) for i in (1, 2, 0)]

    def test_uses_sequence_of_facing_direction(self, make_streamer, make_sink, bank, channel):
        sink = make_sink()
        streamer = make_streamer(sink=sink, channel=channel)
        channel.send(Direction.UP)
        streamer.tick()
        expected = encode_frame(bank.frames_for(Direction.UP)[0], streamer.position)
        assert sink.payloads == [expected]


class TestFailures:

    def test_write_error_propagates_from_tick(self, make_streamer, make_sink):
        streamer = make_streamer(sink=make_sink(fail_after=0))
        with pytest.raises(BrokenPipeError):
            streamer.tick()

    def test_write_error_ends_run(self, make_streamer, make_sink):
        sink = make_sink(fail_after=25)
        streamer = make_streamer(sink=sink, repeats=10, stats_interval=0)
        with pytest.raises(BrokenPipeError):
            streamer.run()
        assert len(sink.payloads) == 25

    def test_run_reports_stats(self, make_streamer, make_sink, make_clock, capsys):
        streamer = make_streamer(sink=make_sink(fail_after=5), repeats=1,
                                 clock=make_clock(step=1.0), stats_interval=2.0)
        with pytest.raises(BrokenPipeError):
            streamer.run()
        out = capsys.readouterr().out
        assert "Stats:" in out
        assert "facing right" in out


def test_streams_sprite_to_server(dev_server):
    red = np.zeros((4, 4, 4), dtype=np.uint8)
    red[:, :] = (255, 0, 0, 255)
    bank = FrameBank([Image.fromarray(red, "RGBA")], size=4)

    connection = connect("127.0.0.1", dev_server.port)
    try:
        canvas_size = get_canvas_size(connection)
        assert canvas_size == (100, 80)
        streamer = SpriteStreamer(connection, bank, canvas_size, start=(98, 0), repeats=2, stats_interval=0)
        streamer.tick()
    finally:
        connection.close()

    deadline = time.monotonic() + 5.0
    while dev_server.stats['total_pixels'] < 32 and time.monotonic() < deadline:
        time.sleep(0.02)

    canvas = dev_server.snapshot()
    assert streamer.position == Coordinates(99, 0, (100, 80))
    assert np.all(canvas[0:4, 99] == (255, 0, 0))
    assert np.all(canvas[0:4, 0:3] == (255, 0, 0))
    assert np.all(canvas[0:4, 3:99] == 0)
    assert np.all(canvas[4:, :] == 0)
