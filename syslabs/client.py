"""Client that sends shell commands to the command server over named pipes."""

from __future__ import annotations

import argparse
import os
import re
import sys
from typing import List, Optional, Tuple

from .comproto import HEADER_SIZE, MessageType, encode_message

BUFFER_SIZE = 1024
CONNECTED_REPLY = "Connection established"

_HEADER = re.compile(rb" *(\d+) (\d)   ")
_MAX_HEADER = 32


class Client:
    """One session with the command server.

    The connection queue and the client's pipes live in the current directory.
    """

    def __init__(self, mq_name: str, wsize: int = BUFFER_SIZE) -> None:
        name = mq_name.lstrip("/")
        if not name:
            raise ValueError("queue name must not be empty")
        if wsize <= 0:
            raise ValueError("wsize must be positive")
        self.mq_name = mq_name
        self.wsize = wsize
        self.workdir = os.getcwd()
        self.queue_path = os.path.join(self.workdir, name)
        pid = os.getpid()
        self.cs_pipe = f"cs_pipe_{pid}"
        self.sc_pipe = f"sc_pipe_{pid}"
        self._cs_path = os.path.join(self.workdir, self.cs_pipe)
        self._sc_path = os.path.join(self.workdir, self.sc_pipe)
        self._created: List[str] = []
        self._cs_fd: Optional[int] = None
        self._sc_fd: Optional[int] = None
        self._connected = False

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Create the pipes, ask the server for a session and wait for its reply."""
        if self._connected or self._created:
            raise RuntimeError("client is already connected")
        try:
            for path in (self._cs_path, self._sc_path):
                os.mkfifo(path, 0o666)
                self._created.append(path)
            self._cs_fd = os.open(self._cs_path, os.O_RDWR)
            self._sc_fd = os.open(self._sc_path, os.O_RDWR)
            self._send_request()
            _, reply = self._receive()
        except BaseException:
            self.close()
            raise
        if reply != CONNECTED_REPLY:
            self.close()
            raise ConnectionError("Connection is not established by the server")
        self._connected = True

    def _send_request(self) -> None:
        info = f"{self.cs_pipe} {self.sc_pipe} {self.wsize}"
        request = f"{len(info) + 1} {int(MessageType.CONNECTION_REQ)}  {info}\n"
        try:
            fd = os.open(self.queue_path, os.O_WRONLY | os.O_NONBLOCK)
        except OSError as exc:
            raise ConnectionError(
                f"Error opening server message queue for connection request: {exc}"
            ) from exc
        try:
            os.write(fd, request.encode())
        finally:
            os.close(fd)

    def _read_exact(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = os.read(self._sc_fd, size - len(data))
            if not chunk:
                raise ConnectionError("server closed the pipe")
            data += chunk
        return data

    def _receive(self) -> Tuple[int, str]:
        header = b""
        while True:
            header += self._read_exact(1)
            match = _HEADER.fullmatch(header)
            if match:
                break
            if len(header) > _MAX_HEADER:
                raise ConnectionError(f"malformed reply header: {header!r}")
        body = self._read_exact(max(int(match.group(1)) - HEADER_SIZE, 0))
        return int(match.group(2)), body.decode(errors="replace")

    def _exchange(self, msg_type: MessageType, data: str) -> str:
        if not self._connected:
            raise RuntimeError("client is not connected")
        view = memoryview(encode_message(msg_type, data).encode())
        while view:
            view = view[os.write(self._cs_fd, view):]
        return self._receive()[1]

    def _finish(self, msg_type: MessageType, data: str) -> str:
        try:
            return self._exchange(msg_type, data)
        finally:
            self._connected = False

    def send_command(self, command: str) -> str:
        """Run command on the server and return its standard output."""
        return self._exchange(MessageType.SEND_COMMAND, command)

    def quit(self) -> str:
        """End the session; returns the server's acknowledgement."""
        return self._finish(MessageType.QUIT_REQ, "quit")

    def close(self) -> None:
        """Close and remove the pipes. Safe to call more than once."""
        self._connected = False
        for fd in (self._cs_fd, self._sc_fd):
            if fd is not None:
                os.close(fd)
        self._cs_fd = self._sc_fd = None
        for path in self._created:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass
        self._created = []


def _emit(result: str) -> None:
    sys.stdout.write(result if result.endswith("\n") else result + "\n")
    sys.stdout.flush()


def _run_batch(client: Client, comfile: str) -> None:
    with open(comfile) as handle:
        for line in handle:
            _emit(client.send_command(line.rstrip("\n")))


def _run_interactive(client: Client) -> None:
    while True:
        try:
            command = input("type command: ")
        except EOFError:
            break
        if command in ("quit", "quitall"):
            msg_type = MessageType.QUIT_ALL_REQ if command == "quitall" else MessageType.QUIT_REQ
            _emit(client._finish(msg_type, command))
            break
        _emit(client.send_command(command))


def main(argv: Optional[List[str]] = None) -> int:
    """Connect to the server and run commands from a file or from standard input."""
    parser = argparse.ArgumentParser(prog="client")
    parser.add_argument("mq_name", help="name of the server's connection queue")
    parser.add_argument("-b", dest="comfile", default=None, help="file of commands to run")
    parser.add_argument("-s", dest="wsize", type=int, default=BUFFER_SIZE,
                        help="size of the server's write chunks")
    args = parser.parse_args(argv)
    try:
        client = Client(args.mq_name, args.wsize)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    with client:
        try:
            client.connect()
        except OSError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        print("Connection is established with the server", flush=True)
        try:
            if args.comfile is not None:
                _run_batch(client, args.comfile)
            else:
                _run_interactive(client)
        except KeyboardInterrupt:
            pass
        except OSError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())