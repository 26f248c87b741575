#!/usr/bin/env python3
"""
Pacflut Sprite Client
Streams an animated sprite to a Pixelflut server and steers it around the
canvas. The sprite wraps at the canvas edges and can be controlled from the
keyboard, a TCP line protocol or a small web page.
"""

import argparse
import io
import socket
import sys
import time
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

import numpy as np
import requests
from PIL import Image, ImageDraw

from pacflut_control import (
    DEFAULT_CONTROL_HOST,
    DEFAULT_CONTROL_PORT,
    DEFAULT_WEB_PORT,
    ControlChannel,
    Direction,
    KeyboardControl,
    SocketControl,
    WebControl,
)


DEFAULT_URL = "pixelflut:1234"
SPRITE_SIZE = 60
FRAME_DURATION_MS = 200
REPEATS_PER_TICK = 10
STATS_INTERVAL = 5.0
DRAIN_POLICIES = ("oldest", "latest")

PACMAN_YELLOW = (255, 235, 0, 255)
MOUTH_ANGLES = (0, 15, 30, 45, 30, 15)


class CanvasSizeError(ValueError):
    """The server answered SIZE with something that is not 'SIZE <w> <h>'."""


class Coordinates(NamedTuple):
    """A point on a canvas of size ``bounds`` with wraparound addition."""

    x: int
    y: int
    bounds: Tuple[int, int]

    @classmethod
    def wrapped(cls, x: int, y: int, bounds: Tuple[int, int]) -> "Coordinates":
        """Build a point from arbitrary (possibly negative) x/y, wrapped into bounds."""
        width, height = bounds
        return cls(x % width, y % height, bounds)

    def __add__(self, other: "Coordinates") -> "Coordinates":
        if other.bounds != self.bounds:
            raise ValueError(f"Cannot add coordinates with bounds {other.bounds} to {self.bounds}")
        width, height = self.bounds
        return Coordinates((self.x + other.x) % width, (self.y + other.y) % height, self.bounds)


class Color(NamedTuple):
    r: int
    g: int
    b: int

    @property
    def hex(self) -> str:
        return f"{self.r:02x}{self.g:02x}{self.b:02x}"


class Pixel(NamedTuple):
    point: Coordinates
    color: Color

    def encode(self) -> str:
        """Wire form of this pixel: ``PX <x> <y> <rrggbb>\\n``."""
        return f"PX {self.point.x} {self.point.y} {self.color.hex}\n"


def encode_frame(frame: np.ndarray, position: Coordinates) -> bytes:
    """Serialize an RGBA frame drawn at ``position`` into PX commands.

    Pixels are emitted row by row, one command per pixel. Alpha is dropped.
    """
    commands = []
    for y, row in enumerate(frame[:, :, :3].tolist()):
        for x, (r, g, b) in enumerate(row):
            point = Coordinates.wrapped(x, y, position.bounds) + position
            commands.append(Pixel(point, Color(r, g, b)).encode())
    return "".join(commands).encode("ascii")


def frame_index(elapsed_ms: float, frame_duration_ms: float, frame_count: int) -> int:
    """Index of the animation frame that is visible after ``elapsed_ms``."""
    return int(elapsed_ms // frame_duration_ms) % frame_count


class FrameBank:
    """Direction-specific copies of one right-facing animation.

    Frames are resized to a ``size`` x ``size`` square with nearest-neighbour
    sampling. Left is the horizontal mirror of right, down is right rotated
    90 degrees clockwise and up is the vertical mirror of down. The stored
    arrays are read-only.
    """

    def __init__(self, frames: List[Image.Image], size: int = SPRITE_SIZE):
        if not frames:
            raise ValueError("Animation has no frames")

        right = [frame.convert("RGBA").resize((size, size), Image.Resampling.NEAREST) for frame in frames]
        left = [frame.transpose(Image.Transpose.FLIP_LEFT_RIGHT) for frame in right]
        down = [frame.transpose(Image.Transpose.ROTATE_270) for frame in right]
        up = [frame.transpose(Image.Transpose.FLIP_TOP_BOTTOM) for frame in down]

        self.size = size
        self.sequences: Dict[Direction, List[np.ndarray]] = {}
        for direction, images in ((Direction.RIGHT, right), (Direction.LEFT, left),
                                  (Direction.DOWN, down), (Direction.UP, up)):
            arrays = []
            for image in images:
                array = np.array(image)
                array.flags.writeable = False
                arrays.append(array)
            self.sequences[direction] = arrays

    def frames_for(self, direction: Direction) -> List[np.ndarray]:
        return self.sequences[direction]

    def __len__(self):
        return len(self.sequences[Direction.RIGHT])


def load_animation(source: str) -> List[Image.Image]:
    """Decode every frame of an image file or http(s) URL into RGBA images."""
    if source.startswith(('http://', 'https://')):
        response = requests.get(source, timeout=10)
        response.raise_for_status()
        data = io.BytesIO(response.content)
    else:
        data = source

    frames = []
    with Image.open(data) as img:
        for index in range(getattr(img, "n_frames", 1)):
            img.seek(index)
            frames.append(img.convert("RGBA"))
    return frames


def draw_pacman_frames(size: int = SPRITE_SIZE) -> List[Image.Image]:
    """Draw a right-facing, chomping Pac-Man on a transparent background."""
    frames = []
    box = (0, 0, size - 1, size - 1)
    eye_radius = max(1, size // 12)
    eye_x, eye_y = size // 2, size // 4
    for angle in MOUTH_ANGLES:
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        if angle:
            draw.pieslice(box, start=angle, end=360 - angle, fill=PACMAN_YELLOW)
        else:
            draw.ellipse(box, fill=PACMAN_YELLOW)
        draw.ellipse((eye_x - eye_radius, eye_y - eye_radius, eye_x + eye_radius, eye_y + eye_radius),
                     fill=(0, 0, 0, 255))
        frames.append(image)
    return frames


def parse_url(url: str) -> Tuple[str, int]:
    """Split ``host:port`` into its parts."""
    host, sep, port = url.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Expected HOST:PORT, got {url!r}")
    return host, int(port)


def parse_size_response(line: str) -> Tuple[int, int]:
    """Parse the server's answer to ``SIZE`` into (width, height)."""
    parts = line.split()
    if len(parts) < 3:
        raise CanvasSizeError(f"Failed parsing of size response: {line.strip()!r}")
    try:
        width, height = int(parts[1]), int(parts[2])
    except ValueError:
        raise CanvasSizeError(f"Failed parsing of size response: {line.strip()!r}") from None
    if not (0 < width <= 0xFFFF and 0 < height <= 0xFFFF):
        raise CanvasSizeError(f"Canvas size out of range: {width}x{height}")
    return width, height


def get_canvas_size(sock: socket.socket) -> Tuple[int, int]:
    """Ask the server for its canvas size over an open connection."""
    sock.sendall(b"SIZE\n")
    with sock.makefile("rb") as reader:
        line = reader.readline()
    return parse_size_response(line.decode("ascii", errors="replace"))


def connect(host: str, port: int) -> socket.socket:
    """Open the canvas connection. Only the connect itself is time limited."""
    sock = socket.create_connection((host, port), timeout=10.0)
    sock.settimeout(None)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, 8388608)
    return sock


class SpriteStreamer:
    """Moves the sprite one step per tick and streams it to the canvas.

    Owns the facing direction and position. Each tick polls the control
    channel once, advances one pixel and then draws the time-selected
    animation frame ``repeats`` times. Write errors are not handled here.
    """

    def __init__(self, sink, bank: FrameBank, canvas_size: Tuple[int, int],
                 start: Tuple[int, int] = (0, 0), channel: ControlChannel = None,
                 frame_duration_ms: float = FRAME_DURATION_MS, repeats: int = REPEATS_PER_TICK,
                 drain: str = "oldest", stats_interval: float = STATS_INTERVAL,
                 clock: Callable[[], float] = time.monotonic):
        if drain not in DRAIN_POLICIES:
            raise ValueError(f"Unknown drain policy: {drain}")
        if stats_interval < 0:
            raise ValueError(f"Stats interval must not be negative: {stats_interval}")
        self.sink = sink
        self.bank = bank
        self.canvas_size = canvas_size
        self.channel = channel if channel is not None else ControlChannel()
        self.frame_duration_ms = frame_duration_ms
        self.repeats = repeats
        self.drain = drain
        self.stats_interval = stats_interval
        self.clock = clock

        self.facing = Direction.RIGHT
        self.position = Coordinates.wrapped(start[0], start[1], canvas_size)
        self.start_time: Optional[float] = None

        self.frames_sent = 0
        self.pixels_sent = 0
        self._last_report = None
        self._last_report_pixels = 0

    def elapsed_ms(self) -> float:
        return (self.clock() - self.start_time) * 1000.0

    def poll(self):
        """Latch a new facing direction if one is waiting."""
        if self.drain == "latest":
            direction = self.channel.drain_latest()
        else:
            direction = self.channel.try_receive()
        if direction is not None:
            self.facing = direction

    def advance(self):
        dx, dy = self.facing.delta
        self.position = self.position + Coordinates.wrapped(dx, dy, self.canvas_size)

    def tick(self):
        """One movement step followed by ``repeats`` draws."""
        if self.start_time is None:
            self.start_time = self.clock()

        self.poll()
        self.advance()
        frames = self.bank.frames_for(self.facing)

        encoded_index = None
        payload = b""
        for _ in range(self.repeats):
            index = frame_index(self.elapsed_ms(), self.frame_duration_ms, len(frames))
            if index != encoded_index:
                payload = encode_frame(frames[index], self.position)
                encoded_index = index
            self.sink.sendall(payload)
            self.frames_sent += 1
            self.pixels_sent += self.bank.size * self.bank.size

    def run(self):
        """Stream forever. Returns only by exception."""
        self.start_time = self.clock()
        self._last_report = self.start_time
        while True:
            self.tick()
            if self.stats_interval:
                self._report_stats()

    def _report_stats(self):
        now = self.clock()
        interval = now - self._last_report
        if interval < self.stats_interval:
            return
        recent_pps = (self.pixels_sent - self._last_report_pixels) / interval
        print(f"Stats: {self.frames_sent:,} frames, {self.pixels_sent:,} pixels sent | "
              f"{recent_pps:.0f} pps | position ({self.position.x}, {self.position.y}) "
              f"facing {self.facing.name.lower()}")
        self._last_report = now
        self._last_report_pixels = self.pixels_sent


def uint16(value: str) -> int:
    number = int(value)
    if not 0 <= number <= 0xFFFF:
        raise argparse.ArgumentTypeError(f"{value} is not in 0..65535")
    return number


def positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value} must be positive")
    return number


def non_negative_float(value: str) -> float:
    number = float(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"{value} must not be negative")
    return number


def host_port(value: str) -> Tuple[str, int]:
    try:
        return parse_url(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Pacflut - steer an animated sprite across a Pixelflut canvas')
    parser.add_argument('-u', '--url', type=host_port, default=DEFAULT_URL,
                        help=f'Pixelflut server as HOST:PORT (default: {DEFAULT_URL})')
    parser.add_argument('x', type=uint16, nargs='?', default=0, help='Start X position (default: 0)')
    parser.add_argument('y', type=uint16, nargs='?', default=0, help='Start Y position (default: 0)')

    sprite_group = parser.add_argument_group('Sprite options')
    sprite_group.add_argument('-g', '--gif', help='Animated GIF file or URL (default: built-in Pac-Man)')
    sprite_group.add_argument('--size', type=positive_int, default=SPRITE_SIZE,
                              help=f'Sprite edge length in pixels (default: {SPRITE_SIZE})')
    sprite_group.add_argument('--frame-duration', type=positive_int, default=FRAME_DURATION_MS,
                              help=f'Animation frame duration in ms (default: {FRAME_DURATION_MS})')

    stream_group = parser.add_argument_group('Streaming options')
    stream_group.add_argument('--repeats', type=positive_int, default=REPEATS_PER_TICK,
                              help=f'Frames drawn per movement step (default: {REPEATS_PER_TICK})')
    stream_group.add_argument('--drain', choices=DRAIN_POLICIES, default='oldest',
                              help='Apply the oldest queued direction per step, or drain to the latest (default: oldest)')
    stream_group.add_argument('--stats-interval', type=non_negative_float, default=STATS_INTERVAL,
                              help=f'Seconds between throughput reports, 0 disables (default: {STATS_INTERVAL})')

    control_group = parser.add_argument_group('Control options')
    control_group.add_argument('--control-host', default=DEFAULT_CONTROL_HOST,
                               help=f'Bind address for remote control (default: {DEFAULT_CONTROL_HOST})')
    control_group.add_argument('--control-port', type=uint16, default=DEFAULT_CONTROL_PORT,
                               help=f'TCP remote control port (default: {DEFAULT_CONTROL_PORT})')
    control_group.add_argument('--web-port', type=uint16, default=DEFAULT_WEB_PORT,
                               help=f'HTTP remote control port (default: {DEFAULT_WEB_PORT})')
    control_group.add_argument('--no-keyboard', action='store_true', help='Do not read w/a/s/d from the terminal')
    return parser


def main(argv: List[str] = None):
    """Command line interface for the sprite client."""
    args = build_parser().parse_args(argv)
    host, port = args.url

    print("Start pixel client")
    channel = ControlChannel()
    keyboard = None
    exit_code = 0

    try:
        if not args.no_keyboard:
            keyboard = KeyboardControl(channel)
            keyboard.start()
        SocketControl(channel, args.control_host, args.control_port).start()
        WebControl(channel, args.control_host, args.web_port).start()

        frames = load_animation(args.gif) if args.gif else draw_pacman_frames(args.size)
        bank = FrameBank(frames, args.size)
        print(f"Sprite ready: {len(bank)} frames at {bank.size}x{bank.size}")

        connection = connect(host, port)
        canvas_size = get_canvas_size(connection)
        print(f"Connected to {host}:{port}, canvas size: {canvas_size[0]}x{canvas_size[1]}")

        streamer = SpriteStreamer(
            connection,
            bank,
            canvas_size,
            start=(args.x, args.y),
            channel=channel,
            frame_duration_ms=args.frame_duration,
            repeats=args.repeats,
            drain=args.drain,
            stats_interval=args.stats_interval
        )
        streamer.run()

    except KeyboardInterrupt:
        print("\nInterrupted, shutting down...")
    except (OSError, ValueError, requests.RequestException) as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1
    finally:
        if keyboard:
            keyboard.restore()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
