"""Master node: tracks data nodes and coordinates uploads, downloads and deletes."""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass

from chestyfs import node_client
from chestyfs.chunks import split_file_into_chunks
from chestyfs.messages import (
    DeleteFileRequest,
    DeleteFileResponse,
    DownloadFileRequest,
    DownloadFileResponse,
    FileChunk,
    ListFilesRequest,
    ListFilesResponse,
    Message,
    MessageCategory,
    MessageOperation,
    RegisterMessage,
    RequestPayload,
    ResponsePayload,
    UploadFileRequest,
    UploadFileResponse,
    UploadPolicy,
)
from chestyfs.node_client import NodeClientError
from chestyfs.transport import TCPStream, TCPTransport

log = logging.getLogger(__name__)

_WAIT_POLL = 0.1
_REGISTER_DIAL_TIMEOUT = 5.0


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        return host or "localhost", int(port)
    except ValueError as exc:
        raise ValueError(f"address {address!r} has an invalid port") from exc


def _response(operation: MessageOperation, **payload: object) -> Message:
    return Message(
        category=MessageCategory.RESPONSE,
        operation=operation,
        payload=ResponsePayload(**payload),
    )


@dataclass(frozen=True)
class DataNodeInfo:
    node_id: str
    addr: str


class MasterNode:
    """Keeps the registry of data nodes and spreads file chunks across them."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        self._data_nodes: dict[str, DataNodeInfo] = {}
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._transport: TCPTransport | None = None

    def start(self, addr: str, stop_event: threading.Event | None = None) -> None:
        """Listen on addr and serve clients and data nodes until stopped."""
        if stop_event is None:
            stop_event = threading.Event()
        try:
            transport = TCPTransport(addr, self)
        except OSError as exc:
            raise OSError(f"failed to set up TCP transport: {exc}") from exc
        self._transport = transport

        errors: list[OSError] = []

        def serve() -> None:
            try:
                transport.serve(stop_event)
            except OSError as exc:
                errors.append(exc)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        try:
            while thread.is_alive() and not stop_event.is_set():
                if self._stopped.wait(_WAIT_POLL):
                    break
        finally:
            transport.close()
            self._transport = None
        thread.join(timeout=1.0)
        if errors:
            raise errors[0]

    def stop(self) -> None:
        self._stopped.set()
        transport = self._transport
        if transport is not None:
            transport.close()

    def handle_connection(
        self, conn: socket.socket, stop_event: threading.Event | None = None
    ) -> None:
        """Read requests from conn and handle each one in its own thread."""
        if stop_event is None:
            stop_event = threading.Event()
        log.info("MasterNode %s: accepted connection", self.node_id)
        stream = TCPStream(conn)
        send_lock = threading.Lock()
        workers: list[threading.Thread] = []
        try:
            while not stop_event.is_set():
                try:
                    msg = stream.recv()
                except EOFError:
                    break
                except (OSError, ValueError) as exc:
                    log.error("MasterNode %s: error receiving message: %s", self.node_id, exc)
                    break
                log.info(
                    "MasterNode %s: received %s %s",
                    self.node_id, msg.category.name, msg.operation.name,
                )
                worker = threading.Thread(
                    target=self._dispatch, args=(msg, stream, send_lock), daemon=True
                )
                worker.start()
                workers = [w for w in workers if w.is_alive()]
                workers.append(worker)
            for worker in workers:
                worker.join()
        finally:
            conn.close()

    def _dispatch(self, msg: Message, stream: TCPStream, send_lock: threading.Lock) -> None:
        if msg.category != MessageCategory.REQUEST or not isinstance(msg.payload, RequestPayload):
            return
        payload = msg.payload
        operation = msg.operation
        reply: Message | None = None

        if operation == MessageOperation.REGISTER:
            if payload.register is None:
                log.error("Register error: missing registration payload")
                return
            try:
                self.register(payload.register)
            except (OSError, ValueError) as exc:
                log.error("Register error: %s", exc)
            return

        if operation == MessageOperation.UPLOAD:
            try:
                if payload.upload is None:
                    raise ValueError("invalid payload for upload")
                log.info("Upload Start: %s", payload.upload.filename)
                self.upload_file(payload.upload)
            except Exception as exc:
                log.error("Upload error: %s", exc)
                reply = _response(
                    operation, upload=UploadFileResponse(success=False, message=str(exc))
                )
            else:
                reply = _response(
                    operation, upload=UploadFileResponse(success=True, message="File save success")
                )
        elif operation == MessageOperation.DOWNLOAD:
            try:
                if payload.download is None:
                    raise ValueError("invalid payload for download")
                content = self.download_file(payload.download)
            except Exception as exc:
                log.error("Download error: %s", exc)
                reply = _response(
                    operation, download=DownloadFileResponse(success=False, message=str(exc))
                )
            else:
                reply = _response(
                    operation,
                    download=DownloadFileResponse(
                        success=True, message="Download successful", file_content=content
                    ),
                )
        elif operation == MessageOperation.DELETE:
            try:
                if payload.delete is None:
                    raise ValueError("invalid payload for delete")
                self.delete_file(payload.delete)
            except Exception as exc:
                log.error("Delete error: %s", exc)
                reply = _response(
                    operation, delete=DeleteFileResponse(success=False, message=str(exc))
                )
            else:
                reply = _response(
                    operation,
                    delete=DeleteFileResponse(success=True, message="Success Delete File"),
                )
        else:
            return

        with send_lock:
            try:
                stream.send(reply)
            except OSError as exc:
                log.error("MasterNode %s: error sending response: %s", self.node_id, exc)

    def _nodes(self) -> list[DataNodeInfo]:
        with self._lock:
            return list(self._data_nodes.values())

    def register(self, request: RegisterMessage) -> None:
        """Check that the data node is reachable and add it to the registry."""
        log.info("MasterNode: Received registration request from %s", request)
        host, port = _parse_address(request.addr)
        try:
            probe = socket.create_connection((host, port), timeout=_REGISTER_DIAL_TIMEOUT)
        except OSError as exc:
            raise ConnectionError(
                f"failed to connect to DataNode {request.node_id}: {exc}"
            ) from exc
        probe.close()
        with self._lock:
            self._data_nodes[request.node_id] = DataNodeInfo(
                node_id=request.node_id, addr=request.addr
            )
        log.info("Registered DataNode: %s at %s", request.node_id, request.addr)

    def has_file(self, user_id: str, filename: str) -> tuple[bool, dict[str, bool]]:
        """Ask every data node about filename; return the overall answer and each node's."""
        nodes = self._nodes()
        responses: dict[str, bool] = {}
        if not nodes:
            return False, responses
        with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
            futures = {
                pool.submit(node_client.check_file, info.addr, user_id, filename): info.node_id
                for info in nodes
            }
            for future in as_completed(futures):
                node_id = futures[future]
                try:
                    responses[node_id] = future.result()
                except NodeClientError as exc:
                    log.error("Error checking file in node %s: %s", node_id, exc)
        return any(responses.values()), responses

    def upload_file(self, request: UploadFileRequest) -> None:
        """Store a file across the data nodes, following the request's upload policy."""
        exists, _ = self.has_file(request.user_id, request.filename)
        log.info("File exist %s", exists)
        if not exists:
            self._handle_new_upload(request)
            return
        if request.policy != UploadPolicy.OVERWRITE:
            raise FileExistsError("can't")

    def _handle_new_upload(self, request: UploadFileRequest) -> None:
        log.info(
            "MasterNode: Handling new upload for file %s from user %s",
            request.filename, request.user_id,
        )
        chunks = split_file_into_chunks(request.content)
        log.info("MasterNode: File split into %d chunks", len(chunks))
        distribution = self.distribute_chunks(chunks)
        if not distribution:
            return
        with self._lock:
            addresses = {node_id: self._data_nodes.get(node_id) for node_id in distribution}

        def send(node_id: str, node_chunks: list[FileChunk]) -> None:
            info = addresses[node_id]
            if info is None:
                raise NodeClientError(f"DataNode {node_id} not found")
            node_client.send_chunks(info.addr, request.user_id, request.filename, node_chunks)

        with ThreadPoolExecutor(max_workers=len(distribution)) as pool:
            futures = [
                pool.submit(send, node_id, node_chunks)
                for node_id, node_chunks in distribution.items()
            ]
            for future in as_completed(futures):
                try:
                    future.result()
                except NodeClientError as exc:
                    log.error("MasterNode: Error during upload: %s", exc)
                    raise
        log.info("MasterNode: Upload completed for file %s", request.filename)

    def download_file(self, request: DownloadFileRequest) -> bytes:
        """Collect the chunks of a file from every data node and join them in order."""
        log.info(
            "MasterNode: Starting download for file %s from user %s",
            request.filename, request.user_id,
        )
        nodes = self._nodes()
        chunks: dict[int, bytes] = {}
        errors: list[NodeClientError] = []
        if nodes:
            with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
                futures = [
                    pool.submit(
                        node_client.request_chunks, info.addr, request.user_id, request.filename
                    )
                    for info in nodes
                ]
                for future in as_completed(futures):
                    try:
                        received = future.result()
                    except NodeClientError as exc:
                        errors.append(exc)
                        continue
                    for chunk in received:
                        chunks[chunk.index] = chunk.content
        if errors:
            raise NodeClientError(f"error during download: {errors[0]}")
        log.info(
            "MasterNode: Successfully downloaded file %s for user %s",
            request.filename, request.user_id,
        )
        return b"".join(chunks[index] for index in sorted(chunks))

    def delete_file(self, request: DeleteFileRequest) -> None:
        """Delete a file from every data node that holds it."""
        exists, nodes = self.has_file(request.user_id, request.filename)
        if not exists:
            raise FileNotFoundError(
                f"file {request.filename} does not exist for user {request.user_id}"
            )
        holders = [node_id for node_id, has in nodes.items() if has]
        with self._lock:
            addresses = {node_id: self._data_nodes.get(node_id) for node_id in holders}

        def remove(node_id: str) -> None:
            info = addresses[node_id]
            if info is None:
                raise NodeClientError(f"data node {node_id} not found")
            try:
                node_client.delete_file(info.addr, request.user_id, request.filename)
            except NodeClientError as exc:
                raise NodeClientError(
                    f"failed to delete file from node {node_id}: {exc}"
                ) from exc

        errors: list[str] = []
        with ThreadPoolExecutor(max_workers=max(1, len(holders))) as pool:
            futures = [pool.submit(remove, node_id) for node_id in holders]
            for future in as_completed(futures):
                try:
                    future.result()
                except NodeClientError as exc:
                    errors.append(str(exc))
        if errors:
            raise NodeClientError(f"errors occurred during file deletion: {errors}")
        log.info(
            "MasterNode: Successfully deleted file %s for user %s",
            request.filename, request.user_id,
        )

    def list_files(self, request: ListFilesRequest) -> ListFilesResponse:
        """The master keeps no listing of its own; the reply carries no entries."""
        return ListFilesResponse()

    def distribute_chunks(self, chunks: Iterable[FileChunk]) -> dict[str, list[FileChunk]]:
        """Assign chunks to data nodes round-robin in registration order."""
        with self._lock:
            node_ids = list(self._data_nodes)
        distribution: dict[str, list[FileChunk]] = {}
        if not node_ids:
            log.warning("No available data nodes for chunk distribution")
            return distribution
        for position, chunk in enumerate(chunks):
            distribution.setdefault(node_ids[position % len(node_ids)], []).append(chunk)
        for node_id, node_chunks in distribution.items():
            log.info("Node %s assigned %d chunks", node_id, len(node_chunks))
        return distribution

    def connected_data_nodes_count(self) -> int:
        with self._lock:
            return len(self._data_nodes)


def run_master_node(
    node_id: str, addr: str, stop_event: threading.Event | None = None
) -> None:
    """Run a master node on addr until stop_event is set."""
    MasterNode(node_id).start(addr, stop_event)