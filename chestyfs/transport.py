"""Length-prefixed message streams over TCP and a threaded listener."""

from __future__ import annotations

import logging
import socket
import struct
import threading
from typing import Any

from chestyfs.messages import Message, decode_message, encode_message

log = logging.getLogger(__name__)

_HEADER = struct.Struct(">I")
_ACCEPT_POLL = 0.2


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"address {address!r} has an invalid port") from exc


def _recv_exact(sock: socket.socket, size: int, *, frame_start: bool) -> bytes:
    parts: list[bytes] = []
    remaining = size
    while remaining:
        part = sock.recv(remaining)
        if not part:
            if frame_start and remaining == size:
                raise EOFError("connection closed by peer")
            raise ConnectionError("connection closed in the middle of a message")
        parts.append(part)
        remaining -= len(part)
    return b"".join(parts)


class TCPStream:
    """Sends and receives whole messages on a connected socket."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock

    def recv(self) -> Message:
        """Receive one message; raises EOFError when the peer has closed."""
        (length,) = _HEADER.unpack(_recv_exact(self.sock, _HEADER.size, frame_start=True))
        return decode_message(_recv_exact(self.sock, length, frame_start=False))

    def send(self, message: Message) -> None:
        body = encode_message(message)
        self.sock.sendall(_HEADER.pack(len(body)) + body)

    def send_and_close(self, message: Message) -> None:
        self.send(message)
        self.sock.close()

    def close_and_recv(self) -> Message:
        message = self.recv()
        self.sock.close()
        return message

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> TCPStream:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def send_message(sock: socket.socket, message: Message) -> None:
    log.debug("SendMessage: %s", message)
    try:
        TCPStream(sock).send(message)
    except OSError as exc:
        log.error("Error sending message: %s", exc)
        raise


def receive_message(sock: socket.socket) -> Message:
    return TCPStream(sock).recv()


class TCPTransport:
    """Accepts connections and hands each one to handler.handle_connection in a thread."""

    def __init__(self, address: str, handler: Any) -> None:
        host, port = _split_address(address)
        self._listener = socket.create_server((host, port))
        self._handler = handler
        self._closed = threading.Event()

    def address(self) -> str:
        """Return the bound address as host:port."""
        host, port = self._listener.getsockname()[:2]
        return f"{host}:{port}"

    def serve(self, stop_event: threading.Event | None = None) -> None:
        """Accept connections until stop_event is set or the transport is closed."""
        if stop_event is None:
            stop_event = threading.Event()
        self._listener.settimeout(_ACCEPT_POLL)
        while not stop_event.is_set() and not self._closed.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closed.is_set():
                    return
                raise
            conn.settimeout(None)
            threading.Thread(
                target=self._handler.handle_connection,
                args=(conn, stop_event),
                daemon=True,
            ).start()

    def close(self) -> None:
        self._closed.set()
        self._listener.close()

    def __enter__(self) -> TCPTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()