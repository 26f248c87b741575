#!/usr/bin/env python3
"""
Development Pixelflut Server
A small threaded server for trying out pacflut locally. Speaks the ASCII
protocol (SIZE, HELP, PX) and keeps the canvas in a numpy array.
"""

import socket
import threading
import argparse
import time
import sys
from typing import Tuple

import numpy as np

# Optional pygame for visual display
try:
    import pygame
    PYGAME_AVAILABLE = True
except ImportError:
    PYGAME_AVAILABLE = False


class PixelflutServer:
    """Development Pixelflut server keeping a numpy canvas."""

    def __init__(self, host: str = "0.0.0.0", port: int = 1234,
                 width: int = 1280, height: int = 720, max_connections: int = 100,
                 show_display: bool = False, scale_display: float = 1.0,
                 stats_interval: float = 5.0):
        self.host = host
        self.port = port
        self.width = width
        self.height = height
        self.max_connections = max_connections
        self.show_display = show_display
        self.scale_display = scale_display
        self.stats_interval = stats_interval

        self.stats = {
            'connections': 0,
            'total_pixels': 0,
            'invalid_commands': 0,
            'bytes_received': 0,
            'start_time': time.time(),
        }
        self.stats_lock = threading.Lock()

        self.canvas = np.zeros((height, width, 3), dtype=np.uint8)
        self.canvas_lock = threading.Lock()

        self.display_width = int(width * scale_display)
        self.display_height = int(height * scale_display)
        self.screen = None
        self.display_dirty = False

        self.running = False
        self.server_socket = None

    def bind(self):
        """Bind and listen. With port 0 the chosen port is stored in self.port."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(self.max_connections)
        self.port = self.server_socket.getsockname()[1]
        self.running = True

    def start(self):
        """Bind, then serve until interrupted."""
        if self.show_display:
            if not PYGAME_AVAILABLE:
                print("Warning: pygame not available, running without display")
                self.show_display = False
            else:
                self._init_display()

        self.bind()
        print(f"Pixelflut server started on {self.host}:{self.port}")
        print(f"Canvas size: {self.width}x{self.height}")
        print("Supported commands: SIZE, HELP, PX")
        print("Press Ctrl+C to stop")

        if self.stats_interval:
            stats_thread = threading.Thread(target=self._stats_reporter, daemon=True)
            stats_thread.start()

        try:
            if self.show_display:
                self._run_with_display()
            else:
                self.serve_forever()
        except KeyboardInterrupt:
            print("\nShutting down server...")
        finally:
            self.stop()
            self._print_final_stats()

    def serve_forever(self):
        """Accept clients until stop() is called, one thread per client."""
        server_socket = self.server_socket
        while self.running:
            try:
                client_socket, address = server_socket.accept()
            except OSError as e:
                if self.running:
                    print(f"Socket error: {e}")
                    continue
                return
            self._spawn_client(client_socket, address)

    def _spawn_client(self, client_socket: socket.socket, address: Tuple[str, int]):
        with self.stats_lock:
            self.stats['connections'] += 1
        client_thread = threading.Thread(
            target=self._handle_client,
            args=(client_socket, address),
            daemon=True
        )
        client_thread.start()

    def _run_with_display(self):
        """Accept clients and refresh the pygame window from the main thread."""
        accept_thread = threading.Thread(target=self.serve_forever, daemon=True)
        accept_thread.start()

        clock = pygame.time.Clock()
        while self.running:
            for event in pygame.event.get():
                if event.type == pygame.QUIT:
                    self.running = False
                    return

            if self.display_dirty:
                self._update_display()
                pygame.display.flip()
            clock.tick(60)

    def stop(self):
        """Stop accepting clients."""
        self.running = False
        if self.server_socket:
            try:
                self.server_socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self.server_socket.close()
            self.server_socket = None
        if self.show_display and PYGAME_AVAILABLE:
            pygame.quit()

    def _handle_client(self, client_socket: socket.socket, address: Tuple[str, int]):
        """Handle a client connection."""
        print(f"Client connected: {address}")

        try:
            buffer = bytearray()
            while self.running:
                data = client_socket.recv(65536)
                if not data:
                    break

                with self.stats_lock:
                    self.stats['bytes_received'] += len(data)

                buffer.extend(data)
                self._process_buffer(buffer, client_socket)

        except OSError as e:
            print(f"Error handling client {address}: {e}")
        finally:
            client_socket.close()
            print(f"Client disconnected: {address}")

    def _process_buffer(self, buffer: bytearray, client_socket: socket.socket):
        """Run every complete line in the buffer and drop it."""
        end = buffer.rfind(b'\n')
        if end == -1:
            return
        for line in bytes(buffer[:end]).split(b'\n'):
            self._process_command(line.decode('ascii', errors='ignore').strip(), client_socket)
        del buffer[:end + 1]

    def _process_command(self, command: str, client_socket: socket.socket):
        """Process one ASCII command."""
        parts = command.split()
        if not parts:
            return

        cmd = parts[0].upper()
        if cmd == "SIZE":
            client_socket.sendall(f"SIZE {self.width} {self.height}\n".encode())

        elif cmd == "HELP":
            help_text = (
                "Available commands:\n"
                "SIZE - Get canvas dimensions\n"
                "HELP - Show this help\n"
                "PX x y rrggbb[aa] - Set pixel\n"
            )
            client_socket.sendall(help_text.encode())

        elif cmd == "PX" and len(parts) >= 4:
            try:
                x, y = int(parts[1]), int(parts[2])
                color = parse_color(parts[3])
            except ValueError:
                self._count_invalid()
                return
            self.set_pixel(x, y, *color)

        else:
            self._count_invalid()

    def _count_invalid(self):
        with self.stats_lock:
            self.stats['invalid_commands'] += 1

    def set_pixel(self, x: int, y: int, r: int, g: int, b: int, a: int = 255):
        """Draw one pixel, alpha-blending when a < 255. Off-canvas pixels are ignored."""
        if not (0 <= x < self.width and 0 <= y < self.height):
            self._count_invalid()
            return

        with self.canvas_lock:
            if a < 255:
                alpha = a / 255.0
                current = self.canvas[y, x].astype(np.float64)
                blended = current * (1 - alpha) + np.array((r, g, b)) * alpha
                self.canvas[y, x] = blended.astype(np.uint8)
            else:
                self.canvas[y, x] = (r, g, b)
            self.display_dirty = True

        with self.stats_lock:
            self.stats['total_pixels'] += 1

    def snapshot(self) -> np.ndarray:
        """Copy of the current canvas as a (height, width, 3) uint8 array."""
        with self.canvas_lock:
            return self.canvas.copy()

    def _stats_reporter(self):
        """Periodically report performance statistics."""
        last_pixels = 0
        last_time = time.time()

        while self.running:
            time.sleep(self.stats_interval)

            current_time = time.time()
            with self.stats_lock:
                current_pixels = self.stats['total_pixels']
                recent_pps = (current_pixels - last_pixels) / (current_time - last_time)
                print(f"Stats: {current_pixels:,} pixels total | "
                      f"{recent_pps:.0f} pps recent | "
                      f"{self.stats['connections']} connections | "
                      f"{self.stats['bytes_received'] / 1024 / 1024:.1f} MB received")

            last_pixels = current_pixels
            last_time = current_time

    def _print_final_stats(self):
        """Print final statistics when server stops."""
        elapsed = time.time() - self.stats['start_time']
        if elapsed > 0:
            print("\n=== Final Statistics ===")
            print(f"Runtime: {elapsed:.1f} seconds")
            print(f"Total pixels: {self.stats['total_pixels']:,}")
            print(f"Average pixels/second: {self.stats['total_pixels'] / elapsed:.0f}")
            print(f"Total connections: {self.stats['connections']}")
            print(f"Data received: {self.stats['bytes_received'] / 1024 / 1024:.1f} MB")
            print(f"Invalid commands: {self.stats['invalid_commands']}")

    def _init_display(self):
        """Initialize pygame display."""
        pygame.init()
        self.screen = pygame.display.set_mode((self.display_width, self.display_height))
        pygame.display.set_caption(f"Pixelflut Server - {self.width}x{self.height}")
        self.screen.fill((0, 0, 0))
        pygame.display.flip()
        print("Visual display initialized")

    def _update_display(self):
        surface = pygame.surfarray.make_surface(np.transpose(self.snapshot(), (1, 0, 2)))
        self.display_dirty = False
        if self.scale_display != 1.0:
            surface = pygame.transform.scale(surface, (self.display_width, self.display_height))
        self.screen.blit(surface, (0, 0))


def parse_color(color_hex: str) -> Tuple[int, int, int, int]:
    """Parse rrggbb or rrggbbaa into an (r, g, b, a) tuple."""
    if len(color_hex) not in (6, 8):
        raise ValueError(f"Invalid color: {color_hex}")
    r = int(color_hex[0:2], 16)
    g = int(color_hex[2:4], 16)
    b = int(color_hex[4:6], 16)
    a = int(color_hex[6:8], 16) if len(color_hex) == 8 else 255
    return r, g, b, a


def main():
    """Command line interface for the development server."""
    parser = argparse.ArgumentParser(description='Development Pixelflut Server')
    parser.add_argument('--host', default='0.0.0.0', help='Host to bind to (default: 0.0.0.0)')
    parser.add_argument('--port', type=int, default=1234, help='Port to bind to (default: 1234)')
    parser.add_argument('--width', type=int, default=1280, help='Canvas width (default: 1280)')
    parser.add_argument('--height', type=int, default=720, help='Canvas height (default: 720)')
    parser.add_argument('--max-connections', type=int, default=100, help='Maximum pending connections (default: 100)')
    parser.add_argument('--show-display', action='store_true', help='Show visual display window (requires pygame)')
    parser.add_argument('--scale-display', type=float, default=1.0, help='Scale factor for display window (default: 1.0)')
    parser.add_argument('--stats-interval', type=float, default=5.0, help='Seconds between stats reports, 0 disables (default: 5)')

    args = parser.parse_args()

    if args.show_display and not PYGAME_AVAILABLE:
        print("Error: --show-display requires pygame. Install with: pip install pygame", file=sys.stderr)
        sys.exit(1)

    # Auto-scale large displays
    if args.show_display and args.scale_display == 1.0:
        if args.width > 1920 or args.height > 1080:
            args.scale_display = min(1920 / args.width, 1080 / args.height)
            print(f"Auto-scaling large display: {args.scale_display:.2f}")

    server = PixelflutServer(
        host=args.host,
        port=args.port,
        width=args.width,
        height=args.height,
        max_connections=args.max_connections,
        show_display=args.show_display,
        scale_display=args.scale_display,
        stats_interval=args.stats_interval
    )

    try:
        server.start()
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
