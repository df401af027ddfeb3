import os
import re
import threading
import time

import pytest

from syslabs.comproto import MessageType, encode_message
from syslabs.comserver import COUNT_FILE, CommandServer, main, run_command


def read_message(fd):
    header = b""
    while True:
        header += os.read(fd, 1)
        match = re.fullmatch(rb" *(\d+) (\d)   ", header)
        if match:
            break
    remaining = int(match.group(1)) - 8
    body = b""
    while len(body) < remaining:
        body += os.read(fd, remaining - len(body))
    return int(match.group(2)), body.decode()


def send(fd, msg_type, data):
    os.write(fd, encode_message(msg_type, data).encode())


@pytest.fixture
def pipes(tmp_path):
    cs = tmp_path / "cs_pipe_42"
    sc = tmp_path / "sc_pipe_42"
    os.mkfifo(cs)
    os.mkfifo(sc)
    cs_fd = os.open(cs, os.O_RDWR)
    sc_fd = os.open(sc, os.O_RDWR)
    yield str(cs), str(sc), cs_fd, sc_fd
    os.close(cs_fd)
    os.close(sc_fd)


def test_run_command_captures_stdout():
    assert run_command("echo hello") == "hello\n"


def test_run_command_ignores_stderr():
    assert run_command("echo oops 1>&2") == ""


def test_queue_path_strips_leading_slash(tmp_path):
    server = CommandServer("/myq", tmp_path)
    assert server.queue_path == str(tmp_path / "myq")


def test_empty_queue_name_rejected(tmp_path):
    with pytest.raises(ValueError):
        CommandServer("/", tmp_path)


def test_handle_client_rejects_bad_wsize(tmp_path):
    server = CommandServer("q", tmp_path)
    with pytest.raises(ValueError):
        server.handle_client("cs", "sc", 0)


def test_handle_client_session(tmp_path, pipes):
    cs, sc, cs_fd, sc_fd = pipes
    server = CommandServer("q", tmp_path)
    worker = threading.Thread(target=server.handle_client, args=(cs, sc, 4), daemon=True)
    worker.start()

    assert read_message(sc_fd) == (MessageType.CONNECTION_REP, "Connection established")
    send(cs_fd, MessageType.SEND_COMMAND, "echo hi")
    assert read_message(sc_fd) == (MessageType.COMMAND_RES, "hi\n")
    send(cs_fd, MessageType.QUIT_REQ, "quit")
    assert read_message(sc_fd) == (MessageType.QUIT_REP, "quit-ack")

    worker.join(5)
    assert not worker.is_alive()
    assert (tmp_path / COUNT_FILE).read_text() == "0"


def test_serve_forever_accepts_and_stops(tmp_path, pipes):
    cs, sc, cs_fd, sc_fd = pipes
    server = CommandServer("q", tmp_path)
    runner = threading.Thread(target=server.serve_forever, daemon=True)
    runner.start()
    deadline = time.monotonic() + 5
    while not os.path.exists(server.queue_path) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert os.path.exists(server.queue_path)

    queue_fd = os.open(server.queue_path, os.O_WRONLY)
    os.write(queue_fd, f"20 1  {cs} {sc} 64\n".encode())
    os.close(queue_fd)

    assert read_message(sc_fd)[1] == "Connection established"
    send(cs_fd, MessageType.SEND_COMMAND, "printf abc")
    assert read_message(sc_fd) == (MessageType.COMMAND_RES, "abc")
    send(cs_fd, MessageType.QUIT_REQ, "quit")
    assert read_message(sc_fd) == (MessageType.QUIT_REP, "quit-ack")

    server.stop()
    runner.join(5)
    assert not runner.is_alive()
    assert not os.path.exists(server.queue_path)


def test_quit_all_stops_server(tmp_path, pipes):
    cs, sc, cs_fd, sc_fd = pipes
    server = CommandServer("q", tmp_path)
    runner = threading.Thread(target=server.serve_forever, daemon=True)
    runner.start()
    deadline = time.monotonic() + 5
    while not os.path.exists(server.queue_path) and time.monotonic() < deadline:
        time.sleep(0.01)

    queue_fd = os.open(server.queue_path, os.O_WRONLY)
    os.write(queue_fd, f"20 1  {cs} {sc} 16\n".encode())
    os.close(queue_fd)

    read_message(sc_fd)
    send(cs_fd, MessageType.QUIT_ALL_REQ, "quitall")
    assert read_message(sc_fd) == (MessageType.QUIT_REP, "quit-ack")
    runner.join(5)
    assert not runner.is_alive()


def test_main_requires_queue_name():
    with pytest.raises(SystemExit):
        main([])