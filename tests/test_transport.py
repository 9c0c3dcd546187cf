import socket
import struct
import threading

import pytest

from chestyfs.messages import (
    BaseResponse,
    HasFileRequest,
    HasFileResponse,
    Message,
    MessageCategory,
    MessageOperation,
    RequestPayload,
    ResponsePayload,
)
from chestyfs.transport import TCPStream, TCPTransport, receive_message, send_message


def _request(filename="f.txt"):
    return Message(
        MessageCategory.REQUEST,
        MessageOperation.HASFILE,
        RequestPayload(has_file=HasFileRequest(user_id="u", filename=filename)),
    )


class _EchoHandler:
    def handle_connection(self, conn, stop_event):
        stream = TCPStream(conn)
        request = stream.recv()
        stream.send_and_close(
            Message(
                MessageCategory.RESPONSE,
                request.operation,
                ResponsePayload(
                    has_file=HasFileResponse(
                        success=True,
                        message=request.payload.has_file.filename,
                        is_exist=True,
                    )
                ),
            )
        )


def test_stream_round_trip_over_socketpair():
    left, right = socket.socketpair()
    with left, right:
        TCPStream(left).send(_request("a"))
        TCPStream(left).send(_request("b"))
        stream = TCPStream(right)
        assert stream.recv() == _request("a")
        assert stream.recv() == _request("b")


def test_send_message_and_receive_message():
    left, right = socket.socketpair()
    with left, right:
        send_message(left, _request())
        assert receive_message(right) == _request()


def test_recv_after_peer_close_raises_eof():
    left, right = socket.socketpair()
    left.close()
    with right, pytest.raises(EOFError):
        TCPStream(right).recv()


def test_truncated_frame_raises_connection_error():
    left, right = socket.socketpair()
    left.sendall(struct.pack(">I", 16) + b"abc")
    left.close()
    with right, pytest.raises(ConnectionError):
        TCPStream(right).recv()


def test_garbage_frame_raises_value_error():
    left, right = socket.socketpair()
    with left, right:
        left.sendall(struct.pack(">I", 4) + b"nope")
        with pytest.raises(ValueError):
            TCPStream(right).recv()


def test_send_and_close_closes_socket():
    left, right = socket.socketpair()
    with right:
        TCPStream(left).send_and_close(_request())
        assert left.fileno() == -1
        stream = TCPStream(right)
        assert stream.recv() == _request()
        with pytest.raises(EOFError):
            stream.recv()


def test_close_and_recv_returns_message_and_closes():
    left, right = socket.socketpair()
    with left:
        TCPStream(left).send(_request())
        assert TCPStream(right).close_and_recv() == _request()
        assert right.fileno() == -1


def test_transport_serves_handler_and_stops():
    transport = TCPTransport("127.0.0.1:0", _EchoHandler())
    stop = threading.Event()
    worker = threading.Thread(target=transport.serve, args=(stop,), daemon=True)
    worker.start()
    try:
        host, port = transport.address().rsplit(":", 1)
        assert host == "127.0.0.1"
        with socket.create_connection((host, int(port)), timeout=5) as conn:
            stream = TCPStream(conn)
            stream.send(_request("zxcv.txt"))
            reply = stream.recv()
        assert reply.category is MessageCategory.RESPONSE
        assert reply.payload.has_file.is_exist is True
        assert reply.payload.has_file.message == "zxcv.txt"
    finally:
        stop.set()
        worker.join(timeout=5)
        transport.close()
    assert not worker.is_alive()


def test_transport_close_ends_serve():
    transport = TCPTransport("127.0.0.1:0", _EchoHandler())
    worker = threading.Thread(target=transport.serve, daemon=True)
    worker.start()
    transport.close()
    worker.join(timeout=5)
    assert not worker.is_alive()


@pytest.mark.parametrize("address", ["nohost", "localhost:port"])
def test_invalid_address_raises(address):
    with pytest.raises(ValueError):
        TCPTransport(address, _EchoHandler())


def test_base_response_defaults_carry_over():
    left, right = socket.socketpair()
    with left, right:
        msg = Message(
            MessageCategory.RESPONSE,
            MessageOperation.HASFILE,
            ResponsePayload(has_file=HasFileResponse()),
        )
        send_message(left, msg)
        reply = receive_message(right)
        assert reply.payload.has_file.success is BaseResponse().success
        assert reply.payload.has_file.is_exist is False