"""Start a local development node and save its runtime metadata."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import itertools
import logging
import os
import socket
import subprocess
import sys
from pathlib import Path
from typing import Any

from subclient.rpc import BasicError, Rpc, ws_client

logger = logging.getLogger(__name__)

SUBSTRATE_BIN_ENV_VAR = "SUBSTRATE_NODE_PATH"
DEFAULT_BINARY = "substrate"
START_PORT = 9900
END_PORT = 10000
MAX_PORTS = 1000
MAX_RETRIES = 20
METADATA_FILE = "metadata.scale"


class NodeError(Exception):
    """The node could not be started, reached, or its output saved."""


class NodeProcess:
    """A running node; it is killed when the ``with`` block ends."""

    def __init__(self, process: subprocess.Popen, port: int) -> None:
        self.process = process
        self.port = port

    @property
    def url(self) -> str:
        return f"ws://localhost:{self.port}"

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def kill(self) -> None:
        """Kill the process and reap it."""
        if self.process.poll() is None:
            with contextlib.suppress(OSError):
                self.process.kill()
        with contextlib.suppress(subprocess.TimeoutExpired):
            self.process.wait(timeout=10)

    def __enter__(self) -> NodeProcess:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.kill()


def _port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("0.0.0.0", port))
        except OSError:
            return False
    return True


def next_open_port(
    start: int = START_PORT, end: int = END_PORT, max_ports: int = MAX_PORTS
) -> int | None:
    """The first port in ``start..end`` that can be bound, wrapping around; None if none."""
    if start >= end:
        raise ValueError(f"empty port range {start}..{end}")
    for port in itertools.islice(itertools.cycle(range(start, end)), max_ports):
        if _port_is_free(port):
            return port
    return None


def spawn_node(binary: str, port: int) -> NodeProcess:
    """Start a development node with a temporary database, serving RPC on ``port``."""
    try:
        process = subprocess.Popen([binary, "--dev", "--tmp", f"--ws-port={port}"])
    except FileNotFoundError as exc:
        raise NodeError(
            "A substrate binary should be installed on your path for testing purposes."
        ) from exc
    except OSError as exc:
        raise NodeError(f"Cannot spawn substrate command '{binary}': {exc}") from exc
    return NodeProcess(process, port)


async def fetch_metadata(url: str, max_retries: int = MAX_RETRIES, delay: float = 1.0) -> bytes:
    """Download the encoded metadata, retrying while the node starts up."""
    for attempt in range(1, max_retries + 1):
        try:
            client = await ws_client(url)
            try:
                return await Rpc(client).metadata_bytes()
            finally:
                await client.close()
        except (BasicError, OSError) as exc:
            logger.info("metadata request %d/%d failed: %s", attempt, max_retries, exc)
            await asyncio.sleep(delay)
    raise NodeError(f"Cannot connect to substrate node after {max_retries} retries")


def write_metadata(out_dir: str | os.PathLike[str], data: bytes) -> Path:
    """Save the metadata to ``out_dir`` and return the file's path."""
    path = Path(out_dir) / METADATA_FILE
    try:
        path.write_bytes(bytes(data))
    except OSError as exc:
        raise NodeError(f"Couldn't write metadata output: {exc}") from exc
    return path


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="subclient-node",
        description="Start a development node and save its runtime metadata.",
    )
    parser.add_argument(
        "--binary", help=f"node binary (default: ${SUBSTRATE_BIN_ENV_VAR} or {DEFAULT_BINARY})"
    )
    parser.add_argument("--out-dir", help="output directory (default: $OUT_DIR)")
    args = parser.parse_args(argv)

    binary = args.binary or os.environ.get(SUBSTRATE_BIN_ENV_VAR, DEFAULT_BINARY)
    out_dir = args.out_dir or os.environ.get("OUT_DIR")
    try:
        if not out_dir:
            raise NodeError("no output directory given and OUT_DIR is not set")
        port = next_open_port()
        if port is None:
            raise NodeError(
                "Cannot spawn substrate: no available ports in the given port range"
            )
        with spawn_node(binary, port) as node:
            data = asyncio.run(fetch_metadata(node.url))
        path = write_metadata(out_dir, data)
    except NodeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(path)
    return 0


if __name__ == "__main__":
    sys.exit(main())