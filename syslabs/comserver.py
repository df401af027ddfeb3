"""A server that runs shell commands for clients connected through named pipes."""

from __future__ import annotations

import argparse
import os
import re
import subprocess
import sys
import threading
from typing import List, Optional, Tuple

from filelock import FileLock

from .comproto import HEADER_SIZE, MessageType, encode_message, extract_number

COUNT_FILE = ".client_num_storage.txt"
_HEADER = re.compile(rb" *(\d+) (\d)   ")
_MAX_HEADER = 32

_LABELS = {
    MessageType.SEND_COMMAND: "COMLINE",
    MessageType.QUIT_REQ: "QUIT_REQ",
    MessageType.QUIT_ALL_REQ: "QUIT_ALL_REQ",
}


def run_command(command: str) -> str:
    """Run command with sh and return what it wrote to standard output."""
    result = subprocess.run(
        ["sh", "-c", command],
        stdout=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        check=False,
    )
    return result.stdout.decode(errors="replace")


def _read_exact(fd: int, size: int) -> Optional[bytes]:
    data = b""
    while len(data) < size:
        chunk = os.read(fd, size - len(data))
        if not chunk:
            return None
        data += chunk
    return data


def _read_message(fd: int) -> Optional[Tuple[int, str]]:
    header = b""
    while True:
        byte = os.read(fd, 1)
        if not byte:
            return None
        header += byte
        match = _HEADER.fullmatch(header)
        if match:
            break
        if len(header) > _MAX_HEADER:
            raise ValueError(f"malformed message header: {header!r}")
    body = _read_exact(fd, max(int(match.group(1)) - HEADER_SIZE, 0))
    if body is None:
        return None
    return int(match.group(2)), body.decode(errors="replace")


def _write_all(fd: int, data: bytes, chunk: int) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view[:chunk])
        view = view[written:]


class CommandServer:
    """Accepts connection requests on a named queue and serves each client."""

    def __init__(self, mq_name: str, workdir=None) -> None:
        name = mq_name.lstrip("/")
        if not name:
            raise ValueError("queue name must not be empty")
        self.mq_name = mq_name
        self.workdir = os.fspath(workdir) if workdir is not None else os.getcwd()
        self.queue_path = os.path.join(self.workdir, name)
        self._count_path = os.path.join(self.workdir, COUNT_FILE)
        self._count_lock = FileLock(self._count_path + ".lock")
        self._stopping = threading.Event()

    def _change_count(self, delta: int) -> int:
        with self._count_lock:
            try:
                with open(self._count_path) as handle:
                    value = int(handle.read().strip() or 0)
            except (OSError, ValueError):
                value = 0
            value += delta
            with open(self._count_path, "w") as handle:
                handle.write(str(value))
        return value

    def stop(self) -> None:
        """Ask serve_forever to return."""
        self._stopping.set()
        try:
            fd = os.open(self.queue_path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError:
            return
        try:
            os.write(fd, b"\n")
        finally:
            os.close(fd)

    def serve_forever(self) -> None:
        """Read connection requests until stopped, one thread per client."""
        if not os.path.exists(self.queue_path):
            os.mkfifo(self.queue_path, 0o660)
        fd = os.open(self.queue_path, os.O_RDWR)
        print(
            f"Server is running and waiting for connections on message queue "
            f"'{self.mq_name}'",
            flush=True,
        )
        try:
            with os.fdopen(fd, "rb", buffering=0) as queue:
                while not self._stopping.is_set():
                    line = queue.readline()
                    if not line or self._stopping.is_set():
                        break
                    self._accept(line.decode(errors="replace").strip())
        finally:
            try:
                os.unlink(self.queue_path)
            except FileNotFoundError:
                pass

    def _accept(self, request: str) -> None:
        if not request:
            return
        fields = request.split()
        if len(fields) < 5:
            print(f"malformed connection request: {request!r}", file=sys.stderr)
            return
        try:
            wsize = int(fields[4])
        except ValueError:
            print(f"malformed connection request: {request!r}", file=sys.stderr)
            return
        worker = threading.Thread(
            target=self._serve_client, args=(fields[2], fields[3], wsize), daemon=True
        )
        worker.start()

    def _serve_client(self, cs_pipe: str, sc_pipe: str, wsize: int) -> None:
        try:
            self.handle_client(cs_pipe, sc_pipe, wsize)
        except (OSError, ValueError) as exc:
            print(f"client session failed: {exc}", file=sys.stderr)

    def handle_client(self, cs_pipe: str, sc_pipe: str, wsize: int) -> None:
        """Serve one client over its pair of pipes until it quits."""
        if wsize <= 0:
            raise ValueError("wsize must be positive")
        cs_path = os.path.join(self.workdir, cs_pipe)
        sc_path = os.path.join(self.workdir, sc_pipe)
        try:
            cs_fd = os.open(cs_path, os.O_RDWR)
        except OSError as exc:
            print(f"Error when opening pipes: {exc}", file=sys.stderr)
            return
        try:
            sc_fd = os.open(sc_path, os.O_RDWR)
        except OSError as exc:
            os.close(cs_fd)
            print(f"Error when opening pipes: {exc}", file=sys.stderr)
            return
        try:
            self._session(cs_fd, sc_fd, cs_pipe, sc_pipe, wsize)
        finally:
            os.close(cs_fd)
            os.close(sc_fd)

    def _session(self, cs_fd: int, sc_fd: int, cs_pipe: str, sc_pipe: str, wsize: int) -> None:
        count = self._change_count(1)
        print(f"Server-client count: {count}", flush=True)
        print(
            f"server main: CONREQUEST message received pid = {extract_number(sc_pipe)}, "
            f"cs= {cs_pipe}, sc= {sc_pipe}, wsize= {wsize}",
            flush=True,
        )

        def reply(msg_type: MessageType, data: str) -> None:
            _write_all(sc_fd, encode_message(msg_type, data).encode(), wsize)

        reply(MessageType.CONNECTION_REP, "Connection established")
        while True:
            message = _read_message(cs_fd)
            if message is None:
                break
            msg_type, data = message
            label = _LABELS.get(msg_type)
            if label is not None:
                print(
                    f"server child: {label} message received: len = "
                    f"{HEADER_SIZE + len(data.encode())}, type = {msg_type}, data = {data}",
                    flush=True,
                )
            if msg_type in (MessageType.QUIT_REQ, MessageType.QUIT_ALL_REQ) or data == "quit":
                count = self._change_count(-1)
                print(f"Server-client count: {count}", flush=True)
                reply(MessageType.QUIT_REP, "quit-ack")
                if msg_type == MessageType.QUIT_ALL_REQ:
                    self.stop()
                break
            output = run_command(data)
            print("command execution finished", flush=True)
            reply(MessageType.COMMAND_RES, output)


def main(argv: Optional[List[str]] = None) -> int:
    """Start the command server on the named queue."""
    parser = argparse.ArgumentParser(prog="comserver")
    parser.add_argument("mq_name", help="name of the connection queue")
    parser.add_argument("--workdir", default=None, help="directory for the queue and pipes")
    args = parser.parse_args(argv)
    server = CommandServer(args.mq_name, args.workdir)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())