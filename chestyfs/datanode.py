"""Data node: stores file chunks locally and serves chunk requests over TCP."""

from __future__ import annotations

import logging
import re
import socket
import threading

from chestyfs.messages import (
    DeleteFileRequest,
    DeleteFileResponse,
    DownloadChunkResponse,
    FileChunk,
    HasFileResponse,
    ListFilesRequest,
    ListFilesResponse,
    Message,
    MessageCategory,
    MessageOperation,
    RegisterMessage,
    RequestPayload,
    ResponsePayload,
    UploadChunkResponse,
)
from chestyfs.store import Store
from chestyfs.transport import TCPStream, TCPTransport, send_message

log = logging.getLogger(__name__)

_CHUNK_INDEX = re.compile(r"[+-]?[0-9]+")
_WAIT_POLL = 0.1
ALL_CHUNKS_SENT = "All chunks sent"


def _parse_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    try:
        return host or "localhost", int(port)
    except ValueError as exc:
        raise ValueError(f"address {address!r} has an invalid port") from exc


def _chunk_prefix(filename: str) -> str:
    return f"{filename}_chunk_"


def _response(operation: MessageOperation, **payload: object) -> Message:
    return Message(
        category=MessageCategory.RESPONSE,
        operation=operation,
        payload=ResponsePayload(**payload),
    )


class DataNode:
    """A storage node that registers with a master and serves chunk operations."""

    def __init__(self, node_id: str, store: Store | None = None) -> None:
        self.node_id = node_id
        self.store = store if store is not None else Store()
        self._stopped = threading.Event()
        self._master_conn: socket.socket | None = None
        self._transport: TCPTransport | None = None

    def start(
        self,
        addr: str,
        master_addr: str,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Listen on addr, register with the master and serve until stopped."""
        if stop_event is None:
            stop_event = threading.Event()
        try:
            transport = TCPTransport(addr, self)
        except OSError as exc:
            raise OSError(f"failed to set up TCP transport: {exc}") from exc
        self._transport = transport
        try:
            _, port = _parse_address(addr)
            register_addr = transport.address() if port == 0 else addr
            try:
                self.register_with_master(register_addr, master_addr)
            except OSError as exc:
                raise ConnectionError(f"failed to register with master: {exc}") from exc

            errors: list[OSError] = []

            def serve() -> None:
                try:
                    transport.serve(stop_event)
                except OSError as exc:
                    errors.append(exc)

            thread = threading.Thread(target=serve, daemon=True)
            thread.start()
            while thread.is_alive() and not stop_event.is_set():
                if self._stopped.wait(_WAIT_POLL):
                    break
            if errors:
                raise errors[0]
        finally:
            transport.close()
            if self._master_conn is not None:
                self._master_conn.close()
                self._master_conn = None

    def stop(self) -> None:
        self._stopped.set()

    def handle_connection(
        self, conn: socket.socket, stop_event: threading.Event | None = None
    ) -> None:
        """Serve requests arriving on conn until the peer closes or a final reply is sent."""
        if stop_event is None:
            stop_event = threading.Event()
        log.info("DataNode %s: Starting TCP protocol", self.node_id)
        stream = TCPStream(conn)
        try:
            self._serve_stream(stream, stop_event)
        finally:
            conn.close()

    def _serve_stream(self, stream: TCPStream, stop_event: threading.Event) -> None:
        while True:
            if stop_event.is_set():
                log.info("DataNode %s: Stopping, closing connection", self.node_id)
                return
            try:
                msg = stream.recv()
            except EOFError:
                log.info("DataNode %s: Connection closed by peer", self.node_id)
                return
            except (OSError, ValueError) as exc:
                log.error("DataNode %s: Error receiving message: %s", self.node_id, exc)
                return

            log.info(
                "DataNode %s: Received message: Category=%s, Operation=%s",
                self.node_id, msg.category.name, msg.operation.name,
            )

            if msg.operation == MessageOperation.HASFILE:
                try:
                    self._handle_has_file(stream, msg)
                except OSError as exc:
                    log.error("DataNode %s: Error handling HasFile: %s", self.node_id, exc)
                return
            if msg.operation == MessageOperation.DELETE:
                try:
                    self._handle_delete_file(stream, msg, stop_event)
                except Exception as exc:
                    log.error("DataNode %s: Error handling Delete: %s", self.node_id, exc)
                return

            try:
                if msg.operation == MessageOperation.UPLOAD_CHUNK:
                    self._handle_upload_chunk(stream, msg)
                elif msg.operation == MessageOperation.DOWNLOAD_CHUNK:
                    self._handle_download_chunks(stream, msg)
                    return
                else:
                    log.warning("DataNode %s: Unknown operation: %s", self.node_id, msg.operation)
                    raise ValueError("unknown operation")
            except Exception as exc:
                log.error("DataNode %s: Error handling operation: %s", self.node_id, exc)
                error = _response(
                    msg.operation,
                    upload_chunk=UploadChunkResponse(success=False, message=str(exc)),
                )
                try:
                    stream.send(error)
                except OSError as send_exc:
                    log.error(
                        "DataNode %s: Error sending error response: %s", self.node_id, send_exc
                    )
                return

    def _handle_download_chunks(self, stream: TCPStream, msg: Message) -> None:
        payload = msg.payload
        if not isinstance(payload, RequestPayload) or payload.download_chunk is None:
            raise ValueError("invalid payload for download chunk")
        req = payload.download_chunk
        log.info(
            "DataNode %s: Processing download request for file %s, user %s",
            self.node_id, req.filename, req.user_id,
        )
        try:
            chunks = self.read_all_chunks(req.user_id, req.filename)
        except OSError as exc:
            raise OSError(f"failed to read chunks: {exc}") from exc

        for index, content in sorted(chunks.items()):
            reply = _response(
                MessageOperation.DOWNLOAD_CHUNK,
                download_chunk=DownloadChunkResponse(
                    chunk=FileChunk(content=content, index=index)
                ),
            )
            try:
                stream.send(reply)
            except OSError as exc:
                raise OSError(f"failed to send chunk response: {exc}") from exc

        stream.send_and_close(
            _response(
                MessageOperation.DOWNLOAD_CHUNK,
                download_chunk=DownloadChunkResponse(success=True, message=ALL_CHUNKS_SENT),
            )
        )

    def _handle_upload_chunk(self, stream: TCPStream, msg: Message) -> None:
        payload = msg.payload
        if not isinstance(payload, RequestPayload) or payload.upload_chunk is None:
            raise ValueError("invalid payload for upload chunk")
        req = payload.upload_chunk
        index = req.chunk.index
        log.info("DataNode %s: Processing chunk %d for file %s", self.node_id, index, req.filename)

        chunk_name = f"{_chunk_prefix(req.filename)}{index}"
        try:
            self.store.write(req.user_id, req.filename, chunk_name, req.chunk.content)
        except OSError as exc:
            raise OSError(f"failed to store chunk: {exc}") from exc

        reply = _response(
            MessageOperation.UPLOAD_CHUNK,
            upload_chunk=UploadChunkResponse(
                success=True,
                message=f"Chunk {index} stored successfully",
                chunk_index=index,
            ),
        )
        try:
            stream.send(reply)
        except OSError as exc:
            raise OSError(f"failed to send response: {exc}") from exc

    def _handle_has_file(self, stream: TCPStream, msg: Message) -> None:
        payload = msg.payload
        if not isinstance(payload, RequestPayload) or payload.has_file is None:
            stream.send_and_close(
                _response(
                    MessageOperation.HASFILE,
                    has_file=HasFileResponse(
                        success=False, message="Response not valid", is_exist=False
                    ),
                )
            )
            return
        exists = self.has_file(payload.has_file.user_id, payload.has_file.filename)
        stream.send_and_close(
            _response(
                MessageOperation.HASFILE,
                has_file=HasFileResponse(
                    success=True, message="Find file result", is_exist=exists
                ),
            )
        )

    def _handle_delete_file(
        self, stream: TCPStream, msg: Message, stop_event: threading.Event
    ) -> None:
        log.info("Node %s : handle delete file start", self.node_id)
        payload = msg.payload
        if not isinstance(payload, RequestPayload) or payload.delete is None:
            try:
                stream.send(
                    _response(
                        MessageOperation.DELETE,
                        delete=DeleteFileResponse(
                            success=False, message="Invalid request payload"
                        ),
                    )
                )
            except OSError as exc:
                raise OSError(f"failed to send error response: {exc}") from exc
            raise ValueError("invalid request payload")

        if stop_event.is_set():
            return

        req = payload.delete
        error: OSError | None = None
        try:
            self.store.delete(req.user_id, req.filename)
        except OSError as exc:
            error = exc

        message = "Delete successful" if error is None else f"Delete failed: {error}"
        try:
            stream.send_and_close(
                _response(
                    MessageOperation.DELETE,
                    delete=DeleteFileResponse(success=error is None, message=message),
                )
            )
        except OSError as exc:
            raise OSError(f"failed to send response: {exc}") from exc

        if error is not None:
            log.error(
                "DataNode: Failed to delete file %s for user %s: %s",
                req.filename, req.user_id, error,
            )
            raise error
        log.info("DataNode: Deleted file %s for user %s", req.filename, req.user_id)

    def has_file(self, user_id: str, filename: str) -> bool:
        return self.store.has(user_id, filename)

    def delete_file(self, request: DeleteFileRequest) -> DeleteFileResponse:
        """Remove every chunk of a file and its directory if it is left empty."""
        log.info(
            "DataNode %s: Attempting to delete file %s for user %s",
            self.node_id, request.filename, request.user_id,
        )
        directory = self.store.chunk_dir(request.user_id, request.filename)
        try:
            entries = sorted(directory.iterdir())
        except FileNotFoundError:
            log.info("DataNode %s: Directory not found for file %s", self.node_id, request.filename)
            return DeleteFileResponse(
                success=False, message=f"File {request.filename} not found"
            )
        except OSError as exc:
            raise OSError(f"error reading directory: {exc}") from exc

        prefix = _chunk_prefix(request.filename)
        deleted = 0
        for entry in entries:
            if not entry.name.startswith(prefix):
                continue
            try:
                entry.unlink()
            except OSError as exc:
                log.error("DataNode %s: Error deleting chunk %s: %s", self.node_id, entry.name, exc)
            else:
                deleted += 1

        try:
            directory.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            log.warning(
                "DataNode %s: Could not delete empty directory %s: %s",
                self.node_id, directory, exc,
            )

        log.info("DataNode %s: Deleted %d chunks for file %s", self.node_id, deleted, request.filename)
        return DeleteFileResponse(
            success=True, message=f"File {request.filename} successfully deleted"
        )

    def list_files(self, request: ListFilesRequest) -> ListFilesResponse:
        """Check that the node's own directory can be listed; the reply carries no entries."""
        directory = self.store.root / self.node_id
        for _ in directory.iterdir():
            pass
        return ListFilesResponse()

    def get_file_list(self) -> list[str]:
        """Return the names of plain files in the node's own directory."""
        directory = self.store.root / self.node_id
        log.debug("GetFileList: Searching for files in %s", directory.resolve())
        return sorted(entry.name for entry in directory.iterdir() if not entry.is_dir())

    def read_all_chunks(self, user_id: str, filename: str) -> dict[int, bytes]:
        """Return the stored chunks of a file keyed by chunk index."""
        log.debug(
            "DataNode %s: Attempting to read all chunks for file %s, user %s",
            self.node_id, filename, user_id,
        )
        directory = self.store.chunk_dir(user_id, filename)
        entries = sorted(directory.iterdir())

        prefix = _chunk_prefix(filename)
        chunks: dict[int, bytes] = {}
        for entry in entries:
            if not entry.name.startswith(prefix):
                continue
            suffix = entry.name[len(prefix):]
            if not _CHUNK_INDEX.fullmatch(suffix):
                log.warning(
                    "DataNode %s: Error parsing chunk index for %s", self.node_id, entry.name
                )
                continue
            try:
                chunks[int(suffix)] = self.read_chunk(user_id, filename, entry.name)
            except OSError as exc:
                log.warning("DataNode %s: Error reading chunk %s: %s", self.node_id, entry.name, exc)

        log.debug(
            "DataNode %s: Successfully read %d chunks for file %s",
            self.node_id, len(chunks), filename,
        )
        return chunks

    def read_chunk(self, user_id: str, filename: str, chunk_name: str) -> bytes:
        data = self.store.read(user_id, filename, chunk_name)
        log.debug(
            "DataNode %s: Successfully read chunk %s. Size: %d bytes",
            self.node_id, chunk_name, len(data),
        )
        return data

    def register_with_master(self, addr: str, master_addr: str) -> None:
        """Connect to the master and announce this node's id and address."""
        conn = socket.create_connection(_parse_address(master_addr))
        self._master_conn = conn
        send_message(
            conn,
            Message(
                category=MessageCategory.REQUEST,
                operation=MessageOperation.REGISTER,
                payload=RequestPayload(
                    register=RegisterMessage(node_id=self.node_id, addr=addr)
                ),
            ),
        )


def run_data_node(
    node_id: str,
    addr: str,
    master_addr: str,
    stop_event: threading.Event | None = None,
) -> None:
    """Run a data node storing under ./tmp/datanode_<node_id>."""
    node = DataNode(node_id, Store(f"./tmp/datanode_{node_id}"))
    node.start(addr, master_addr, stop_event)