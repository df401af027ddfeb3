"""Server that sets up the message framework segment and tears it down on a signal."""

from __future__ import annotations

import argparse
import os
import signal
import sys
import threading
from typing import List, Optional

from .mf import MessageFramework, MFError
from .mfconfig import CONFIG_FILENAME, read_configuration


def main(argv: Optional[List[str]] = None) -> int:
    """Initialise the segment, wait for SIGINT or SIGTERM, then remove it."""
    parser = argparse.ArgumentParser(prog="mfserver")
    parser.add_argument("--config", default=CONFIG_FILENAME, help="configuration file")
    parser.add_argument("--base-dir", default=None, help="directory for the segment")
    args = parser.parse_args(argv)

    print(f"mfserver pid={os.getpid()}", flush=True)
    stop = threading.Event()
    received: List[int] = []

    def on_signal(signo, _frame) -> None:
        received.append(signo)
        stop.set()

    previous = {}
    try:
        for signo in (signal.SIGINT, signal.SIGTERM):
            previous[signo] = signal.signal(signo, on_signal)
        try:
            framework = MessageFramework(read_configuration(args.config), args.base_dir)
            framework.init()
        except (OSError, MFError) as exc:
            print(f"mfserver: {exc}", file=sys.stderr)
            return 1
        while not stop.wait(0.5):
            pass
    finally:
        for signo, handler in previous.items():
            signal.signal(signo, handler)

    print("Received termination signal. Cleaning up...", flush=True)
    try:
        framework.destroy()
    except MFError as exc:
        print(f"mfserver: {exc}", file=sys.stderr)
        return 1
    return int(received[0]) if received else 0


if __name__ == "__main__":
    sys.exit(main())