"""Requests the master node makes to individual data nodes."""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable

from chestyfs.datanode import ALL_CHUNKS_SENT
from chestyfs.messages import (
    DeleteFileRequest,
    DownloadChunkRequest,
    FileChunk,
    HasFileRequest,
    Message,
    MessageCategory,
    MessageOperation,
    RequestPayload,
    ResponsePayload,
    UploadFileChunkRequest,
)
from chestyfs.transport import TCPStream

log = logging.getLogger(__name__)

UPLOAD_DIAL_TIMEOUT = 15.0
DELETE_DIAL_TIMEOUT = 5.0

_RECV_ERRORS = (OSError, EOFError, ValueError)


class NodeClientError(Exception):
    """A request to a data node failed or got an invalid reply."""


def _connect(addr: str, timeout: float | None = None) -> socket.socket:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise NodeClientError(f"address {addr!r} has no port")
    try:
        port_number = int(port)
    except ValueError as exc:
        raise NodeClientError(f"address {addr!r} has an invalid port") from exc
    try:
        sock = socket.create_connection((host or "localhost", port_number), timeout=timeout)
    except OSError as exc:
        raise NodeClientError(f"failed to connect to data node {addr}: {exc}") from exc
    sock.settimeout(None)
    return sock


def _request(operation: MessageOperation, **payload: object) -> Message:
    return Message(
        category=MessageCategory.REQUEST,
        operation=operation,
        payload=RequestPayload(**payload),
    )


def _response_payload(message: Message) -> ResponsePayload | None:
    payload = message.payload
    return payload if isinstance(payload, ResponsePayload) else None


def check_file(addr: str, user_id: str, filename: str) -> bool:
    """Ask the data node at addr whether it holds filename for user_id."""
    log.info("MasterNode: check for file %s from user %s", filename, user_id)
    with TCPStream(_connect(addr)) as stream:
        try:
            stream.send(
                _request(
                    MessageOperation.HASFILE,
                    has_file=HasFileRequest(user_id=user_id, filename=filename),
                )
            )
            reply = stream.close_and_recv()
        except _RECV_ERRORS as exc:
            raise NodeClientError(f"has-file request to {addr} failed: {exc}") from exc

    payload = _response_payload(reply)
    if payload is None or payload.has_file is None:
        raise NodeClientError("error correct response")
    return payload.has_file.is_exist


def send_chunks(
    addr: str, user_id: str, filename: str, chunks: Iterable[FileChunk]
) -> None:
    """Upload chunks to the data node at addr, waiting for an acknowledgement of each."""
    chunks = list(chunks)
    log.info("Starting to send %d chunks to node %s for file %s", len(chunks), addr, filename)
    with TCPStream(_connect(addr, UPLOAD_DIAL_TIMEOUT)) as stream:
        for number, chunk in enumerate(chunks, start=1):
            log.debug("Sending chunk %d/%d to node %s", number, len(chunks), addr)
            try:
                stream.send(
                    _request(
                        MessageOperation.UPLOAD_CHUNK,
                        upload_chunk=UploadFileChunkRequest(
                            user_id=user_id, filename=filename, chunk=chunk
                        ),
                    )
                )
            except OSError as exc:
                raise NodeClientError(f"failed to send chunk {number}: {exc}") from exc

            try:
                reply = stream.recv()
            except _RECV_ERRORS as exc:
                raise NodeClientError(
                    f"failed to receive response for chunk {number}: {exc}"
                ) from exc

            if (
                reply.category != MessageCategory.RESPONSE
                or reply.operation != MessageOperation.UPLOAD_CHUNK
            ):
                raise NodeClientError(f"unexpected response for chunk {number}: {reply}")

            payload = _response_payload(reply)
            if payload is None or payload.upload_chunk is None:
                raise NodeClientError(f"invalid response payload for chunk {number}")
            if not payload.upload_chunk.success:
                raise NodeClientError(
                    f"upload failed for chunk {number}: {payload.upload_chunk.message}"
                )
    log.info("Successfully uploaded all chunks to node %s", addr)


def request_chunks(addr: str, user_id: str, filename: str) -> list[FileChunk]:
    """Fetch every chunk of filename that the data node at addr holds."""
    with TCPStream(_connect(addr)) as stream:
        try:
            stream.send(
                _request(
                    MessageOperation.DOWNLOAD_CHUNK,
                    download_chunk=DownloadChunkRequest(user_id=user_id, filename=filename),
                )
            )
        except OSError as exc:
            raise NodeClientError(
                f"failed to send download request to DataNode {addr}: {exc}"
            ) from exc

        log.info("Start Get Data %s", addr)
        received: list[FileChunk] = []
        while True:
            try:
                reply = stream.recv()
            except EOFError:
                log.info("The stream from DataNode %s is end", addr)
                break
            except (OSError, ValueError) as exc:
                raise NodeClientError(
                    f"error receiving chunk from DataNode {addr}: {exc}"
                ) from exc

            if (
                reply.category != MessageCategory.RESPONSE
                or reply.operation != MessageOperation.DOWNLOAD_CHUNK
            ):
                continue
            payload = _response_payload(reply)
            if payload is None or payload.download_chunk is None:
                raise NodeClientError(f"invalid payload for download chunk from DataNode {addr}")
            answer = payload.download_chunk
            if answer.success and answer.message == ALL_CHUNKS_SENT:
                log.info("All chunks received from DataNode %s", addr)
                break
            received.append(answer.chunk)
    return received


def delete_file(addr: str, user_id: str, filename: str) -> None:
    """Ask the data node at addr to delete filename for user_id."""
    with TCPStream(_connect(addr, DELETE_DIAL_TIMEOUT)) as stream:
        log.info("Send delete file request")
        try:
            stream.send(
                _request(
                    MessageOperation.DELETE,
                    delete=DeleteFileRequest(filename=filename, user_id=user_id),
                )
            )
        except OSError as exc:
            raise NodeClientError(f"failed to send delete request: {exc}") from exc
        try:
            reply = stream.close_and_recv()
        except _RECV_ERRORS as exc:
            raise NodeClientError(f"failed to receive delete response: {exc}") from exc

    payload = _response_payload(reply)
    if payload is None or payload.delete is None:
        raise NodeClientError("invalid response from data node")
    if not payload.delete.success:
        raise NodeClientError(f"data node failed to delete file: {payload.delete.message}")