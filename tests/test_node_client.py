import socket
import threading

import pytest

from chestyfs.chunks import split_file_into_chunks
from chestyfs.datanode import DataNode
from chestyfs.messages import (
    DeleteFileResponse,
    DownloadChunkResponse,
    FileChunk,
    HasFileResponse,
    Message,
    MessageCategory,
    MessageOperation,
    ResponsePayload,
    UploadChunkResponse,
)
from chestyfs.node_client import (
    NodeClientError,
    check_file,
    delete_file,
    request_chunks,
    send_chunks,
)
from chestyfs.store import Store
from chestyfs.transport import TCPStream, TCPTransport

USER = "TestUser"
FILENAME = "zxcv.txt"


@pytest.fixture
def data_node_addr(tmp_path):
    node = DataNode("data1", Store(tmp_path / "store"))
    stop_event = threading.Event()
    transport = TCPTransport("127.0.0.1:0", node)
    thread = threading.Thread(target=transport.serve, args=(stop_event,), daemon=True)
    thread.start()
    yield transport.address()
    stop_event.set()
    transport.close()
    thread.join(timeout=5)


def _one_shot_server(reply):
    listener = socket.create_server(("127.0.0.1", 0))
    received = []

    def run():
        conn, _ = listener.accept()
        with TCPStream(conn) as stream:
            received.append(stream.recv())
            if reply is not None:
                stream.send(reply)
        listener.close()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    host, port = listener.getsockname()[:2]
    return f"{host}:{port}", thread, received


def _response(operation, **payload):
    return Message(
        category=MessageCategory.RESPONSE,
        operation=operation,
        payload=ResponsePayload(**payload),
    )


def _closed_port_addr():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"127.0.0.1:{port}"


def test_check_file_missing(data_node_addr):
    assert check_file(data_node_addr, USER, FILENAME) is False


def test_upload_then_check_and_download(data_node_addr):
    content = bytes(range(256)) * 2
    chunks = split_file_into_chunks(content)
    send_chunks(data_node_addr, USER, FILENAME, chunks)

    assert check_file(data_node_addr, USER, FILENAME) is True
    received = request_chunks(data_node_addr, USER, FILENAME)
    assert sorted(received, key=lambda c: c.index) == chunks
    joined = b"".join(c.content for c in sorted(received, key=lambda c: c.index))
    assert joined == content


def test_delete_removes_file(data_node_addr):
    send_chunks(data_node_addr, USER, FILENAME, split_file_into_chunks(b"hello world"))
    assert check_file(data_node_addr, USER, FILENAME) is True
    delete_file(data_node_addr, USER, FILENAME)
    assert check_file(data_node_addr, USER, FILENAME) is False


def test_send_no_chunks_stores_nothing(data_node_addr):
    send_chunks(data_node_addr, USER, FILENAME, [])
    assert check_file(data_node_addr, USER, FILENAME) is False


def test_request_chunks_for_missing_file_fails(data_node_addr):
    with pytest.raises(NodeClientError, match="invalid payload for download chunk"):
        request_chunks(data_node_addr, USER, FILENAME)


def test_connection_refused_raises():
    with pytest.raises(NodeClientError, match="failed to connect"):
        check_file(_closed_port_addr(), USER, FILENAME)


def test_address_without_port_rejected():
    with pytest.raises(NodeClientError, match="no port"):
        delete_file("localhost", USER, FILENAME)


def test_check_file_invalid_reply():
    addr, thread, received = _one_shot_server(
        _response(MessageOperation.HASFILE, delete=DeleteFileResponse(success=True))
    )
    with pytest.raises(NodeClientError, match="error correct response"):
        check_file(addr, USER, FILENAME)
    thread.join(timeout=5)
    assert received[0].operation == MessageOperation.HASFILE
    assert received[0].payload.has_file.filename == FILENAME


def test_check_file_reads_is_exist():
    addr, thread, _ = _one_shot_server(
        _response(
            MessageOperation.HASFILE,
            has_file=HasFileResponse(success=True, message="Find file result", is_exist=True),
        )
    )
    assert check_file(addr, USER, FILENAME) is True
    thread.join(timeout=5)


def test_send_chunks_reports_failed_upload():
    addr, thread, received = _one_shot_server(
        _response(
            MessageOperation.UPLOAD_CHUNK,
            upload_chunk=UploadChunkResponse(success=False, message="disk full"),
        )
    )
    with pytest.raises(NodeClientError, match="upload failed for chunk 1: disk full"):
        send_chunks(addr, USER, FILENAME, [FileChunk(content=b"abc", index=0)])
    thread.join(timeout=5)
    assert received[0].payload.upload_chunk.chunk.content == b"abc"


def test_send_chunks_rejects_unexpected_operation():
    addr, thread, _ = _one_shot_server(
        _response(MessageOperation.DELETE, delete=DeleteFileResponse(success=True))
    )
    with pytest.raises(NodeClientError, match="unexpected response for chunk 1"):
        send_chunks(addr, USER, FILENAME, [FileChunk(content=b"abc", index=0)])
    thread.join(timeout=5)


def test_send_chunks_peer_closes_without_reply():
    addr, thread, _ = _one_shot_server(None)
    with pytest.raises(NodeClientError, match="failed to receive response for chunk 1"):
        send_chunks(addr, USER, FILENAME, [FileChunk(content=b"abc", index=0)])
    thread.join(timeout=5)


def test_request_chunks_stops_at_end_of_stream():
    chunk = FileChunk(content=b"partial", index=3)
    addr, thread, received = _one_shot_server(
        _response(
            MessageOperation.DOWNLOAD_CHUNK,
            download_chunk=DownloadChunkResponse(chunk=chunk),
        )
    )
    assert request_chunks(addr, USER, FILENAME) == [chunk]
    thread.join(timeout=5)
    assert received[0].payload.download_chunk.user_id == USER


def test_delete_file_reports_node_failure():
    addr, thread, _ = _one_shot_server(
        _response(
            MessageOperation.DELETE,
            delete=DeleteFileResponse(success=False, message="Delete failed: busy"),
        )
    )
    with pytest.raises(NodeClientError, match="data node failed to delete file: Delete failed: busy"):
        delete_file(addr, USER, FILENAME)
    thread.join(timeout=5)


def test_delete_file_invalid_reply():
    addr, thread, _ = _one_shot_server(
        _response(MessageOperation.DELETE, has_file=HasFileResponse(success=True))
    )
    with pytest.raises(NodeClientError, match="invalid response from data node"):
        delete_file(addr, USER, FILENAME)
    thread.join(timeout=5)