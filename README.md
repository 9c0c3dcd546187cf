# chestyfs

A small distributed file store. One **master** node takes upload, download
and delete requests from clients. It splits each file into 50-byte chunks,
spreads them round-robin over the **data** nodes that have registered with
it, and joins them back together in index order on download. Each data node
started from the command line keeps its chunks on local disk under
`./tmp/datanode_<id>`.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install ".[test]"
pytest
```

## Running a cluster

Start the master first, then any number of data nodes. A data node starts
listening, then registers its address with the master; the master checks
that it can connect to that address before adding the node.

```
chestyfs -type master -id master1 -addr :8000
chestyfs -type data -id data1 -addr :8001 -master :8000
chestyfs -type data -id data2 -addr :8002 -master :8000
chestyfs -type data -id data3 -addr :8003 -master :8000
```

| option    | meaning                                        |
|-----------|------------------------------------------------|
| `-type`   | `master` or `data`                             |
| `-id`     | ID of the node                                 |
| `-addr`   | address to listen on, such as `:8000`          |
| `-master` | address of the master node (data nodes only)   |

Any other `-type` ends the command with
`Invalid node type. Use 'master' or 'data'`. Press Ctrl+C or send SIGTERM
to stop a node.

## Using it from Python

Clients talk to the master over TCP. Every message is a `Message`
(`chestyfs.messages`) with a `MessageCategory`, a `MessageOperation` and a
`RequestPayload` or `ResponsePayload`. On the wire each message is a 4-byte
big-endian length followed by JSON (`encode_message` / `decode_message`);
`chestyfs.transport.send_message` and `receive_message` do the framing.

```python
import socket

from chestyfs.messages import (
    Message, MessageCategory, MessageOperation,
    RequestPayload, UploadFileRequest, UploadPolicy,
)
from chestyfs.transport import send_message, receive_message

content = b"hello, chunks"
with socket.create_connection(("localhost", 8000)) as sock:
    send_message(sock, Message(
        category=MessageCategory.REQUEST,
        operation=MessageOperation.UPLOAD,
        payload=RequestPayload(upload=UploadFileRequest(
            user_id="TestUser",
            filename="notes.txt",
            file_size=len(content),
            policy=UploadPolicy.NO_CHANGE,
            content=content,
        )),
    ))
    reply = receive_message(sock)
    print(reply.payload.upload.success, reply.payload.upload.message)
```

- `MessageOperation.DOWNLOAD` with a `DownloadFileRequest` returns the whole
  file in `reply.payload.download.file_content`.
- `MessageOperation.DELETE` with a `DeleteFileRequest` removes the file from
  every data node that holds it; it fails if no node has the file.

Each reply carries `success` and `message`, so failures come back as
`success=False` with the reason in `message`.

The nodes can also run inside your own process:
`chestyfs.master.run_master_node(node_id, addr, stop_event)` and
`chestyfs.datanode.run_data_node(node_id, addr, master_addr, stop_event)`
block until the `threading.Event` is set. `MasterNode` and `DataNode` can be
used directly as well; `DataNode` takes a `chestyfs.store.Store`, which lays
chunks out as `<root>/<user_id>/<SHA-1 of filename>/<filename>_chunk_<n>`.

## Upload policies

If a file already exists on some data node when an upload arrives,
`UploadPolicy.OVERWRITE` reports success and leaves the stored file as it is.
`UploadPolicy.VERSION_CONTROL` and `UploadPolicy.NO_CHANGE` reject the upload.

## Other helpers

- `chestyfs.chunks.split_file_into_chunks` cuts bytes into indexed
  `FileChunk`s of `CHUNK_SIZE` (50) bytes.
- `chestyfs.crypto` offers `copy_encrypt` / `copy_decrypt` (AES-CTR with a
  random 16-byte IV written before the ciphertext), `new_encryption_key`,
  `generate_id` and `hash_key`. The store and the nodes do not use them;
  chunks are kept on disk unencrypted.

## What it does not do

- There is no file listing: the master ignores `MessageOperation.LIST`, and
  `list_files` on either node returns an empty `ListFilesResponse`.
- Overwriting an existing file is not performed; see the policies above.
- Chunks are not replicated: each chunk lives on exactly one data node, so a
  download misses whatever was on a node that is gone.
- The master keeps its registry of data nodes in memory only; data nodes
  must register again after the master restarts.