"""
Test Configuration
==================

Shared fixtures for the pacflut tests.
"""

import threading
import time

import numpy as np
import pytest
from PIL import Image

from pacflut import FrameBank
from pacflut_control import ControlChannel
from pixelflut_server import PixelflutServer


class FakeClock:
    """Manually driven clock; optionally advances by ``step`` after every read."""

    def __init__(self, start: float = 0.0, step: float = 0.0):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class RecordingSink:
    """Stands in for the canvas socket and keeps everything sent to it."""

    def __init__(self, fail_after: int = None):
        self.payloads = []
        self.fail_after = fail_after

    def sendall(self, data: bytes):
        if self.fail_after is not None and len(self.payloads) >= self.fail_after:
            raise BrokenPipeError("canvas connection closed")
        self.payloads.append(data)


@pytest.fixture
def channel():
    return ControlChannel()


@pytest.fixture
def asymmetric_frames():
    """Three distinct 4x4 RGBA frames with no mirror or rotation symmetry."""
    frames = []
    for offset in range(3):
        values = (np.arange(4 * 4 * 4, dtype=np.uint16).reshape(4, 4, 4) * 3 + offset * 50) % 256
        values[:, :, 3] = 255
        frames.append(Image.fromarray(values.astype(np.uint8), "RGBA"))
    return frames


@pytest.fixture
def bank(asymmetric_frames):
    return FrameBank(asymmetric_frames, size=4)


@pytest.fixture
def receive():
    """Wait for the next direction on a channel, or fail after ``timeout``."""
    def _receive(channel, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            direction = channel.try_receive()
            if direction is not None:
                return direction
            time.sleep(0.01)
        pytest.fail("No direction arrived on the control channel")
    return _receive


@pytest.fixture
def dev_server():
    """Development Pixelflut server on an ephemeral port, 100x80 canvas."""
    server = PixelflutServer(host="127.0.0.1", port=0, width=100, height=80, stats_interval=0)
    server.bind()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.stop()


@pytest.fixture
def make_clock():
    """Factory for FakeClock instances."""
    return FakeClock


@pytest.fixture
def make_sink():
    """Factory for RecordingSink instances."""
    return RecordingSink
