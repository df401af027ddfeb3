"""Demonstration of a producer process and a consumer sharing message queues."""

from __future__ import annotations

import argparse
import multiprocessing
import os
import sys
from typing import Iterable, List, Optional

from .mf import MessageFramework, MFError
from .mfconfig import CONFIG_FILENAME, MAX_DATALEN, MFConfig, read_configuration

QUEUE_SIZE_KB = 16
DEFAULT_COUNT = 5


def _message(names: List[str], index: int, number: int) -> str:
    if len(names) == 1:
        return f"MessageData-{number}"
    return f"{names[index]}-{index}-{number}"


def produce(framework: MessageFramework, names: Iterable[str], count: int) -> List[int]:
    """Create each queue and send count messages to it; returns the queue ids."""
    names = list(names)
    qids: List[int] = []
    try:
        for name in names:
            framework.create(name, QUEUE_SIZE_KB)
            qids.append(framework.open(name))
        for index, qid in enumerate(qids):
            for number in range(count):
                framework.send(qid, _message(names, index, number).encode() + b"\0")
    finally:
        for qid in qids:
            framework.close(qid)
    return qids


def consume(framework: MessageFramework, names: Iterable[str], count: int) -> List[str]:
    """Receive count messages from each queue in turn and return them as text."""
    messages: List[str] = []
    qids: List[int] = []
    try:
        for name in names:
            qids.append(framework.open(name))
        for qid in qids:
            for _ in range(count):
                data = framework.recv(qid, MAX_DATALEN)
                messages.append(data.split(b"\0", 1)[0].decode(errors="replace"))
    finally:
        for qid in qids:
            framework.close(qid)
    return messages


def _producer(config: MFConfig, base_dir: str, names: List[str], count: int) -> None:
    framework = MessageFramework(config, base_dir)
    framework.connect()
    try:
        produce(framework, names, count)
    finally:
        framework.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    """Run a producer in a child process, then consume and print its messages."""
    parser = argparse.ArgumentParser(prog="mfdemo")
    parser.add_argument("--config", default=CONFIG_FILENAME, help="configuration file")
    parser.add_argument("--base-dir", default=None, help="directory for the segment")
    parser.add_argument("--queues", type=int, default=1, help="number of queues")
    parser.add_argument("--count", type=int, default=DEFAULT_COUNT,
                        help="messages per queue")
    args = parser.parse_args(argv)
    if args.queues < 1 or args.count < 0:
        parser.error("--queues must be at least 1 and --count not negative")
    names = [f"msgqueue{n}" for n in range(1, args.queues + 1)]

    try:
        config = read_configuration(args.config)
        framework = MessageFramework(config, args.base_dir)
    except (OSError, MFError) as exc:
        print(f"mfdemo: {exc}", file=sys.stderr)
        return 1

    owns_segment = not os.path.exists(framework.segment_path)
    try:
        if owns_segment:
            framework.init()
        process = multiprocessing.get_context().Process(
            target=_producer, args=(config, framework.base_dir, names, args.count)
        )
        process.start()
        process.join()
        if process.exitcode != 0:
            print("mfdemo: producer failed", file=sys.stderr)
            return 1
        framework.connect()
        try:
            for message in consume(framework, names, args.count):
                print(message)
            for name in names:
                framework.remove(name)
        finally:
            framework.disconnect()
    except MFError as exc:
        print(f"mfdemo: {exc}", file=sys.stderr)
        return 1
    finally:
        if owns_segment and os.path.exists(framework.segment_path):
            framework.destroy()
    return 0


if __name__ == "__main__":
    sys.exit(main())