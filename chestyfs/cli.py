"""Command line entry point that runs a master or a data node."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager

from chestyfs.datanode import run_data_node
from chestyfs.master import run_master_node

log = logging.getLogger(__name__)

INVALID_TYPE_MESSAGE = "Invalid node type. Use 'master' or 'data'"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chestyfs", description="Run a file system node.")
    parser.add_argument(
        "-type", "--type", dest="node_type", default="",
        help="Type of node: 'master' or 'data'",
    )
    parser.add_argument("-id", "--id", dest="node_id", default="", help="ID of the node")
    parser.add_argument("-addr", "--addr", dest="addr", default="", help="Address to listen on")
    parser.add_argument(
        "-master", "--master", dest="master_addr", default="",
        help="Address of the master node (for data nodes)",
    )
    return parser


@contextmanager
def _stop_on_signals(stop_event: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: object) -> None:
        stop_event.set()

    previous = {
        signum: signal.signal(signum, handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and run the requested node until it stops."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s: %(message)s")

    if args.node_type not in ("master", "data"):
        sys.exit(INVALID_TYPE_MESSAGE)

    stop_event = threading.Event()
    with _stop_on_signals(stop_event):
        try:
            if args.node_type == "master":
                run_master_node(args.node_id, args.addr, stop_event)
            else:
                run_data_node(args.node_id, args.addr, args.master_addr, stop_event)
        except KeyboardInterrupt:
            stop_event.set()
        except (OSError, ValueError) as exc:
            log.error("Node stopped with error: %s", exc)
            return 0
    log.info("Node stopped gracefully")
    return 0


if __name__ == "__main__":
    sys.exit(main())