"""Configuration of the shared-memory message framework."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable, Union

CONFIG_FILENAME = "mf.config"

MIN_DATALEN = 1
MAX_DATALEN = 4096

MIN_MQSIZE = 16
MAX_MQSIZE = 128

MIN_SHMEMSIZE = 512
MAX_SHMEMSIZE = 8192

MAXFILENAME = 128
MAX_MQNAMESIZE = 128

_NAME = re.compile(r'SHMEM_NAME\s*"([^"]+)')

# Checked in this order; the first key the line starts with decides.
_INT_FIELDS = (
    ("SHMEM_SIZE", "shmem_size"),
    ("MAX_MSGS_IN_QUEUE", "max_msgs_in_queue"),
    ("MAX_QUEUES_IN_SHMEM", "max_queues_in_shmem"),
)
_INT_PATTERNS = {
    key: re.compile(rf"{key}\s*([+-]?\d+)") for key, _ in _INT_FIELDS
}


@dataclass
class MFConfig:
    """Settings read from the configuration file.

    shmem_size is in kilobytes; the other limits count messages and queues.
    """

    shmem_name: str = ""
    shmem_size: int = 0
    max_msgs_in_queue: int = 0
    max_queues_in_shmem: int = 0


def _apply(config: MFConfig, lines: Iterable[str]) -> MFConfig:
    for raw in lines:
        line = raw.rstrip("\r\n")
        if line.startswith("#"):
            continue
        if line.startswith("SHMEM_NAME"):
            match = _NAME.match(line)
            if match:
                config.shmem_name = match.group(1)
            continue
        for key, field in _INT_FIELDS:
            if line.startswith(key):
                match = _INT_PATTERNS[key].match(line)
                if match:
                    setattr(config, field, int(match.group(1)))
                break
    return config


def read_configuration(path: Union[str, "os.PathLike[str]"] = CONFIG_FILENAME) -> MFConfig:
    """Read a configuration file; keys that are missing or malformed stay at zero."""
    with open(path, encoding="utf-8", errors="replace") as handle:
        return _apply(MFConfig(), handle)