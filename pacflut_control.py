#!/usr/bin/env python3
"""
Pacflut Remote Control
Direction input for the pacflut sprite: keyboard, TCP line protocol and HTTP.

Every source runs on its own daemon thread and only ever sends Direction
values into one shared ControlChannel; the render loop is the single reader.
"""

import queue
import socket
import sys
import threading
from enum import Enum
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Optional, TextIO, Tuple

try:
    import termios
    import tty
    TERMIOS_AVAILABLE = True
except ImportError:
    TERMIOS_AVAILABLE = False


DEFAULT_CONTROL_HOST = "0.0.0.0"
DEFAULT_CONTROL_PORT = 1234
DEFAULT_WEB_PORT = 8080


class Direction(Enum):
    """Movement direction, valued by the control key that selects it."""

    UP = "w"
    LEFT = "a"
    DOWN = "s"
    RIGHT = "d"

    @property
    def delta(self) -> Tuple[int, int]:
        return _DELTAS[self]


_DELTAS = {
    Direction.UP: (0, -1),
    Direction.LEFT: (-1, 0),
    Direction.DOWN: (0, 1),
    Direction.RIGHT: (1, 0),
}


def parse_command(text: str) -> Optional[Direction]:
    """Map a control key or line (``w``/``a``/``s``/``d``) to a Direction.

    Surrounding whitespace is ignored; anything else yields None.
    """
    try:
        return Direction(text.strip())
    except ValueError:
        return None


class ControlChannel:
    """Many-producer, single-consumer queue of Direction events."""

    def __init__(self):
        self._queue = queue.Queue()

    def send(self, direction: Direction):
        self._queue.put(direction)

    def try_receive(self) -> Optional[Direction]:
        """Return the oldest queued direction without blocking, or None."""
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain_latest(self) -> Optional[Direction]:
        """Empty the queue and return the most recent direction, or None."""
        latest = None
        while True:
            direction = self.try_receive()
            if direction is None:
                return latest
            latest = direction


class KeyboardControl:
    """Reads single characters from a terminal and sends w/a/s/d as directions."""

    def __init__(self, channel: ControlChannel, stream: TextIO = None):
        self.channel = channel
        self.stream = stream if stream is not None else sys.stdin
        self.thread = None
        self._saved_attrs = None
        self._fd = None

    def start(self) -> bool:
        """Start reading on a daemon thread. Returns False if unavailable."""
        if self.stream.isatty():
            if not TERMIOS_AVAILABLE:
                print("Warning: Keyboard control is unavailable: no termios support", file=sys.stderr)
                return False
            self._fd = self.stream.fileno()
            self._saved_attrs = termios.tcgetattr(self._fd)
            # cbreak instead of raw so Ctrl+C still interrupts the process
            tty.setcbreak(self._fd)

        self.thread = threading.Thread(target=self.run, name="keyboard-control", daemon=True)
        self.thread.start()
        print("Keyboard control active (w/a/s/d)")
        return True

    def run(self):
        while True:
            try:
                char = self.stream.read(1)
            except OSError as e:
                print(f"Warning: Keyboard input failed: {e}", file=sys.stderr)
                return
            if not char:
                print("Keyboard input closed")
                return
            direction = parse_command(char)
            if direction is not None:
                self.channel.send(direction)

    def restore(self):
        """Put the terminal back the way start() found it."""
        if self._saved_attrs is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None


class SocketControl:
    """TCP line-protocol remote control, one handler thread per connection."""

    def __init__(self, channel: ControlChannel, host: str = DEFAULT_CONTROL_HOST,
                 port: int = DEFAULT_CONTROL_PORT):
        self.channel = channel
        self.host = host
        self.port = port
        self.server_socket = None
        self.thread = None
        self.connections = 0

    def start(self) -> bool:
        """Bind the listener and start accepting. Returns False on bind failure."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen()
        except OSError as e:
            sock.close()
            print(f"Warning: Socket based control is unavailable: {e}", file=sys.stderr)
            return False

        self.server_socket = sock
        self.port = sock.getsockname()[1]
        self.thread = threading.Thread(target=self._accept_loop, name="socket-control", daemon=True)
        self.thread.start()
        print(f"Socket control listening on {self.host}:{self.port}")
        return True

    def stop(self):
        sock, self.server_socket = self.server_socket, None
        if sock:
            try:
                # Wakes up the blocked accept() before closing
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def _accept_loop(self):
        while True:
            sock = self.server_socket
            if sock is None:
                return
            try:
                client_socket, address = sock.accept()
            except OSError as e:
                if self.server_socket is None:
                    return
                print(f"Warning: Socket control accept failed: {e}", file=sys.stderr)
                continue

            print(f"Remote control connected. (IP: {address[0]}:{address[1]} | Connection: {self.connections})")
            self.connections += 1
            handler = threading.Thread(
                target=self._handle_client,
                args=(client_socket, address),
                daemon=True
            )
            handler.start()

    def _handle_client(self, client_socket: socket.socket, address: Tuple[str, int]):
        peer = f"{address[0]}:{address[1]}"
        try:
            with client_socket.makefile("r", encoding="ascii", errors="replace") as lines:
                for line in lines:
                    direction = parse_command(line)
                    if direction is not None:
                        self.channel.send(direction)
        except OSError as e:
            print(f"Warning: Remote control {peer} failed: {e}", file=sys.stderr)
        finally:
            client_socket.close()
        print(f"Remote control disconnected! (IP: {peer})")


CONTROL_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Pacflut Control</title>
<style>
  body { background: #000; color: #ffeb3b; font-family: monospace; text-align: center; }
  .pad { display: inline-grid; grid-template-columns: repeat(3, 5em); gap: 0.5em; margin-top: 2em; }
  button { height: 5em; font-size: 1.2em; background: #1a237e; color: #ffeb3b; border: 2px solid #ffeb3b; border-radius: 0.5em; }
  button:active { background: #ffeb3b; color: #1a237e; }
</style>
</head>
<body>
<h1>Pacflut</h1>
<div class="pad">
  <span></span><button data-key="w">&uarr;</button><span></span>
  <button data-key="a">&larr;</button><button data-key="s">&darr;</button><button data-key="d">&rarr;</button>
</div>
<p>Use the buttons, the arrow keys or w/a/s/d.</p>
<script>
  const arrows = { ArrowUp: "w", ArrowLeft: "a", ArrowDown: "s", ArrowRight: "d" };
  function steer(key) { fetch("/" + key, { method: "POST" }); }
  document.querySelectorAll("button").forEach(function (button) {
    button.addEventListener("click", function () { steer(button.dataset.key); });
  });
  document.addEventListener("keydown", function (event) {
    const key = arrows[event.key] || event.key;
    if ("wasd".includes(key) && key.length === 1) { steer(key); }
  });
</script>
</body>
</html>
"""


class _ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True


class _ControlRequestHandler(BaseHTTPRequestHandler):
    """GET / serves the control page, POST /w|a|s|d steers, everything else is 404."""

    def do_GET(self):
        if self.path.split("?")[0] != "/":
            self._not_found()
            return
        body = CONTROL_PAGE.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        if length:
            self.rfile.read(length)

        path = self.path.split("?")[0]
        direction = parse_command(path[1:]) if path.startswith("/") else None
        if direction is None:
            self._not_found()
            return
        self.server.channel.send(direction)
        self.send_response(200)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_HEAD(self):
        self._not_found()

    def do_PUT(self):
        self._not_found()

    def do_DELETE(self):
        self._not_found()

    def do_PATCH(self):
        self._not_found()

    def do_OPTIONS(self):
        self._not_found()

    def _not_found(self):
        body = b"404 Not Found"
        self.send_response(404)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def log_message(self, format, *args):
        pass


class WebControl:
    """HTTP remote control serving a button page and POST /w|a|s|d."""

    def __init__(self, channel: ControlChannel, host: str = DEFAULT_CONTROL_HOST,
                 port: int = DEFAULT_WEB_PORT):
        self.channel = channel
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

    def start(self) -> bool:
        """Bind the HTTP server and serve on a daemon thread. Returns False on bind failure."""
        try:
            server = _ThreadedHTTPServer((self.host, self.port), _ControlRequestHandler)
        except OSError as e:
            print(f"Warning: Web based control is unavailable: {e}", file=sys.stderr)
            return False

        server.channel = self.channel
        self.server = server
        self.port = server.server_address[1]
        self.thread = threading.Thread(target=server.serve_forever, name="web-control", daemon=True)
        self.thread.start()
        print(f"Web control available at http://{self.host}:{self.port}/")
        return True

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
