import os

import pytest

from syslabs.mf import MessageFramework, MFError
from syslabs.mfconfig import MAX_DATALEN, MAX_MQSIZE, MIN_MQSIZE, MFConfig


@pytest.fixture
def config():
    return MFConfig(shmem_name="/mftest", shmem_size=512, max_msgs_in_queue=10,
                    max_queues_in_shmem=8)


@pytest.fixture
def framework(config, tmp_path):
    fw = MessageFramework(config, tmp_path)
    fw.init()
    fw.connect()
    yield fw
    for step in (fw.disconnect, fw.destroy):
        try:
            step()
        except MFError:
            pass


def test_send_and_recv_keep_order(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    assert framework.open("q1") == qid
    for text in (b"one", b"two", b"three"):
        framework.send(qid, text)
    assert [framework.recv(qid) for _ in range(3)] == [b"one", b"two", b"three"]


def test_recv_from_empty_queue_fails(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    with pytest.raises(MFError, match="empty"):
        framework.recv(qid)


def test_first_queue_gets_index_zero_and_ids_differ(framework):
    first = framework.create("a", MIN_MQSIZE)
    second = framework.create("b", MIN_MQSIZE)
    assert first == 0
    assert second != first


def test_duplicate_name_rejected(framework):
    framework.create("q1", MIN_MQSIZE)
    with pytest.raises(MFError, match="already exists"):
        framework.create("q1", MIN_MQSIZE)


@pytest.mark.parametrize("size", [MIN_MQSIZE - 1, MAX_MQSIZE + 1])
def test_invalid_queue_size_rejected(framework, size):
    with pytest.raises(MFError, match="Invalid queue"):
        framework.create("q1", size)


def test_empty_name_rejected(framework):
    with pytest.raises(MFError):
        framework.create("", MIN_MQSIZE)


def test_maximum_queue_count(config, tmp_path):
    config.max_queues_in_shmem = 2
    fw = MessageFramework(config, tmp_path)
    fw.init()
    fw.connect()
    fw.create("a", MIN_MQSIZE)
    fw.create("b", MIN_MQSIZE)
    with pytest.raises(MFError, match="Maximum number of queues"):
        fw.create("c", MIN_MQSIZE)
    fw.disconnect()
    fw.destroy()


def test_open_unknown_queue_fails(framework):
    with pytest.raises(MFError, match="not found"):
        framework.open("missing")


def test_remove_open_queue_fails_until_closed(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    with pytest.raises(MFError, match="still in use"):
        framework.remove("q1")
    framework.close(qid)
    framework.remove("q1")
    with pytest.raises(MFError, match="not found"):
        framework.open("q1")


def test_name_can_be_reused_after_remove(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.remove("q1")
    again = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    framework.send(again, b"fresh")
    assert qid == again
    assert framework.recv(again) == b"fresh"


def test_full_queue_rejects_and_wraps_around(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    blocks = [bytes([value]) * MAX_DATALEN for value in (1, 2, 3, 4)]
    for block in blocks[:3]:
        framework.send(qid, block)
    with pytest.raises(MFError, match="Not enough space"):
        framework.send(qid, blocks[3])
    assert framework.recv(qid) == blocks[0]
    framework.send(qid, blocks[3])
    assert [framework.recv(qid) for _ in range(3)] == blocks[1:]


def test_small_buffer_leaves_message_in_place(framework):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    framework.send(qid, b"abcdef")
    with pytest.raises(MFError, match="Buffer too small"):
        framework.recv(qid, 3)
    assert framework.recv(qid, 6) == b"abcdef"


@pytest.mark.parametrize("payload", [b"", b"x" * (MAX_DATALEN + 1)])
def test_message_length_limits(framework, payload):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    with pytest.raises(MFError):
        framework.send(qid, payload)


def test_invalid_queue_identifier(framework):
    with pytest.raises(MFError, match="Invalid queue identifier"):
        framework.close(99)
    with pytest.raises(MFError, match="active queue"):
        framework.send(0, b"data")


def test_second_instance_sees_same_queues(framework, config, tmp_path):
    qid = framework.create("shared", MIN_MQSIZE)
    framework.open("shared")
    framework.send(qid, b"across")
    other = MessageFramework(config, tmp_path)
    other.connect()
    other_qid = other.open("shared")
    assert other_qid == qid
    assert other.recv(other_qid) == b"across"
    other.close(other_qid)
    other.disconnect()


def test_operations_need_connection(config, tmp_path):
    fw = MessageFramework(config, tmp_path)
    fw.init()
    with pytest.raises(MFError, match="not initialized"):
        fw.create("q1", MIN_MQSIZE)
    fw.destroy()


def test_connect_without_init_fails(config, tmp_path):
    fw = MessageFramework(config, tmp_path)
    with pytest.raises(MFError, match="not initialized"):
        fw.connect()


def test_disconnect_twice_fails(framework):
    framework.disconnect()
    with pytest.raises(MFError):
        framework.disconnect()


def test_destroy_removes_segment(framework):
    framework.create("q1", MIN_MQSIZE)
    framework.destroy()
    assert not os.path.exists(framework.segment_path)
    with pytest.raises(MFError):
        framework.destroy()


def test_size_out_of_range_rejected(tmp_path):
    fw = MessageFramework(MFConfig("/small", 100, 10, 8), tmp_path)
    with pytest.raises(MFError, match="out of valid range"):
        fw.init()


def test_missing_segment_name_rejected(tmp_path):
    with pytest.raises(MFError):
        MessageFramework(MFConfig("", 512, 10, 8), tmp_path)


def test_print_queues_shows_previews(framework, capsys):
    qid = framework.create("q1", MIN_MQSIZE)
    framework.open("q1")
    framework.send(qid, b"hello")
    framework.send(qid, b"a\nbcdefghijklm")
    framework.print_queues()
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "Queue 'q1':",
        "Message Size: 5, Preview: hello",
        "Message Size: 14, Preview: a.bcdefghi",
    ]