"""Named message queues kept in a segment file that several processes share."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from filelock import FileLock

from .mfconfig import (
    MAX_DATALEN,
    MAX_MQNAMESIZE,
    MAX_MQSIZE,
    MAX_SHMEMSIZE,
    MIN_DATALEN,
    MIN_MQSIZE,
    MIN_SHMEMSIZE,
    MFConfig,
    read_configuration,
)

MAX_QUEUE_SLOTS = MAX_SHMEMSIZE // MIN_MQSIZE

_COUNT = struct.Struct("<I")
_SLOT = struct.Struct(f"<{MAX_MQNAMESIZE}sIIIIIIii")
_LENGTH = struct.Struct("<I")
_UINT = struct.Struct("<I")
_INT = struct.Struct("<i")

MANAGEMENT_SIZE = _COUNT.size + MAX_QUEUE_SLOTS * _SLOT.size

# Offsets inside one slot of the fields that change after a queue is created.
_FIELDS = {
    "head": (MAX_MQNAMESIZE + 8, _UINT),
    "tail": (MAX_MQNAMESIZE + 12, _UINT),
    "size": (MAX_MQNAMESIZE + 20, _UINT),
    "reference_count": (MAX_MQNAMESIZE + 28, _INT),
}


class MFError(Exception):
    """Raised when a message framework operation cannot be carried out."""


@dataclass
class QueueMetadata:
    """Bookkeeping for one queue: its region of the segment and its ring state."""

    name: str = ""
    start_offset: int = 0
    end_offset: int = 0
    head: int = 0
    tail: int = 0
    capacity: int = 0
    size: int = 0
    active: bool = False
    reference_count: int = 0

    @property
    def buffer_size(self) -> int:
        return self.capacity * 1024

    @property
    def free_space(self) -> int:
        return self.buffer_size - self.size

    @classmethod
    def _unpack(cls, data: bytes) -> "QueueMetadata":
        name, start, end, head, tail, capacity, size, active, refs = _SLOT.unpack(data)
        return cls(
            name.split(b"\0", 1)[0].decode("utf-8", "replace"),
            start, end, head, tail, capacity, size, bool(active), refs,
        )

    def _pack(self) -> bytes:
        return _SLOT.pack(
            self.name.encode("utf-8"),
            self.start_offset,
            self.end_offset,
            self.head,
            self.tail,
            self.capacity,
            self.size,
            int(self.active),
            self.reference_count,
        )


def _slot_offset(index: int) -> int:
    return _COUNT.size + index * _SLOT.size


def _preview(data: bytes) -> str:
    return "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in data[:10])


class MessageFramework:
    """Message queues in a segment file under base_dir, named by the configuration."""

    def __init__(self, config: Optional[MFConfig] = None, base_dir=None) -> None:
        self.config = config if config is not None else read_configuration()
        name = self.config.shmem_name.strip("/").replace("/", "_")
        if not name:
            raise MFError("shared memory name is not configured")
        self.base_dir = os.fspath(base_dir) if base_dir is not None else os.getcwd()
        self.segment_path = os.path.join(self.base_dir, name)
        self._process_path = self.segment_path + ".procs"
        self._lock_path = self.segment_path + ".lock"
        self._lock = FileLock(self._lock_path)
        self._queue_locks: Dict[int, FileLock] = {}
        self._fd: Optional[int] = None

    @property
    def connected(self) -> bool:
        return self._fd is not None

    @property
    def _segment_size(self) -> int:
        return self.config.shmem_size * 1024

    @property
    def _slot_limit(self) -> int:
        return min(max(self.config.max_queues_in_shmem, 0), MAX_QUEUE_SLOTS)

    def _check_size(self) -> None:
        if not MIN_SHMEMSIZE <= self.config.shmem_size <= MAX_SHMEMSIZE:
            raise MFError("Shared memory size in the config file is out of valid range")

    def _require_connected(self) -> None:
        if self._fd is None:
            raise MFError("Shared memory not initialized.")

    # Low-level access

    def _pread(self, offset: int, size: int, fd: Optional[int] = None) -> bytes:
        data = os.pread(self._fd if fd is None else fd, size, offset)
        if len(data) != size:
            raise MFError("shared memory segment is truncated")
        return data

    def _pwrite(self, offset: int, data: bytes) -> None:
        os.pwrite(self._fd, data, offset)

    def _load(self, fd: Optional[int] = None) -> Tuple[int, List[QueueMetadata]]:
        raw = self._pread(0, MANAGEMENT_SIZE, fd)
        (count,) = _COUNT.unpack_from(raw, 0)
        metas = [
            QueueMetadata._unpack(raw[_slot_offset(i):_slot_offset(i) + _SLOT.size])
            for i in range(MAX_QUEUE_SLOTS)
        ]
        return count, metas

    def _read_slot(self, index: int) -> QueueMetadata:
        return QueueMetadata._unpack(self._pread(_slot_offset(index), _SLOT.size))

    def _write_slot(self, index: int, meta: QueueMetadata) -> None:
        self._pwrite(_slot_offset(index), meta._pack())

    def _write_count(self, count: int) -> None:
        self._pwrite(0, _COUNT.pack(count))

    def _set_field(self, index: int, field: str, value: int) -> None:
        offset, packer = _FIELDS[field]
        self._pwrite(_slot_offset(index) + offset, packer.pack(value))

    def _ring_write(self, meta: QueueMetadata, pos: int, data: bytes) -> int:
        first = min(len(data), meta.buffer_size - pos)
        self._pwrite(meta.start_offset + pos, data[:first])
        if first < len(data):
            self._pwrite(meta.start_offset, data[first:])
        return (pos + len(data)) % meta.buffer_size

    def _ring_read(self, meta: QueueMetadata, pos: int, size: int) -> Tuple[bytes, int]:
        first = min(size, meta.buffer_size - pos)
        data = self._pread(meta.start_offset + pos, first)
        if first < size:
            data += self._pread(meta.start_offset, size - first)
        return data, (pos + size) % meta.buffer_size

    def _queue_lock(self, index: int) -> FileLock:
        lock = self._queue_locks.get(index)
        if lock is None:
            lock = FileLock(f"{self.segment_path}.q{index}.lock")
            self._queue_locks[index] = lock
        return lock

    def _drop_queue_lock(self, index: int) -> None:
        self._queue_locks.pop(index, None)
        try:
            os.unlink(f"{self.segment_path}.q{index}.lock")
        except FileNotFoundError:
            pass

    def _processes(self) -> List[int]:
        try:
            with open(self._process_path) as handle:
                return [int(token) for token in handle.read().split()]
        except FileNotFoundError:
            return []

    def _save_processes(self, pids: List[int]) -> None:
        with open(self._process_path, "w") as handle:
            handle.write("".join(f"{pid}\n" for pid in pids))

    # Segment lifetime

    def init(self) -> None:
        """Create the segment with an empty management section."""
        self._check_size()
        os.makedirs(self.base_dir, exist_ok=True)
        with self._lock:
            fd = os.open(self.segment_path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.ftruncate(fd, self._segment_size)
            finally:
                os.close(fd)
            self._save_processes([])

    def destroy(self) -> None:
        """Remove the segment, its process list and every queue lock."""
        if not os.path.exists(self.segment_path):
            raise MFError("Shared memory is not initialized.")
        with self._lock:
            fd = os.open(self.segment_path, os.O_RDONLY)
            try:
                _, metas = self._load(fd)
            finally:
                os.close(fd)
            for index, meta in enumerate(metas):
                if meta.active:
                    self._drop_queue_lock(index)
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None
            for path in (self.segment_path, self._process_path):
                try:
                    os.unlink(path)
                except FileNotFoundError:
                    pass
        try:
            os.unlink(self._lock_path)
        except FileNotFoundError:
            pass

    def connect(self) -> None:
        """Attach this process to an initialised segment."""
        if self._fd is not None:
            raise MFError("already connected")
        self._check_size()
        try:
            fd = os.open(self.segment_path, os.O_RDWR)
        except FileNotFoundError:
            raise MFError("Shared memory is not initialized.") from None
        if os.fstat(fd).st_size < self._segment_size:
            os.close(fd)
            raise MFError("shared memory segment is smaller than configured")
        self._fd = fd
        with self._lock:
            pids = self._processes()
            pids.append(os.getpid())
            self._save_processes(pids)

    def disconnect(self) -> None:
        """Detach this process from the segment."""
        if self._fd is None:
            raise MFError("Shared memory not initialized or already disconnected.")
        with self._lock:
            pids = self._processes()
            if os.getpid() in pids:
                pids.remove(os.getpid())
                self._save_processes(pids)
        os.close(self._fd)
        self._fd = None

    # Queues

    def _find_region(self, metas: List[QueueMetadata], need: int) -> int:
        cursor = MANAGEMENT_SIZE
        for start, end in sorted((m.start_offset, m.end_offset) for m in metas if m.active):
            if start - cursor >= need:
                return cursor
            cursor = max(cursor, end)
        if self._segment_size - cursor >= need:
            return cursor
        raise MFError("Not enough shared memory for the queue.")

    def create(self, mqname: str, mqsize: int) -> int:
        """Create a queue of mqsize kilobytes; returns its identifier."""
        self._require_connected()
        if (
            not mqname
            or len(mqname.encode("utf-8")) >= MAX_MQNAMESIZE
            or not MIN_MQSIZE <= mqsize <= MAX_MQSIZE
        ):
            raise MFError("Invalid queue name or size.")
        with self._lock:
            count, metas = self._load()
            if count >= self.config.max_queues_in_shmem:
                raise MFError("Maximum number of queues reached.")
            slots = metas[:self._slot_limit]
            if any(m.active and m.name == mqname for m in slots):
                raise MFError(f"Queue with the name '{mqname}' already exists.")
            index = next((i for i, m in enumerate(slots) if not m.active), None)
            if index is None:
                raise MFError("Maximum number of queues reached.")
            start = self._find_region(metas, mqsize * 1024)
            meta = QueueMetadata(
                name=mqname,
                start_offset=start,
                end_offset=start + mqsize * 1024,
                capacity=mqsize,
                active=True,
            )
            self._write_slot(index, meta)
            self._write_count(count + 1)
            return index

    def remove(self, mqname: str) -> None:
        """Remove a queue that no process has open."""
        self._require_connected()
        with self._lock:
            count, metas = self._load()
            for index, meta in enumerate(metas[:self._slot_limit]):
                if not (meta.active and meta.name == mqname):
                    continue
                if meta.reference_count > 0:
                    raise MFError(
                        f"Cannot remove queue '{mqname}' as it is still in use "
                        f"(reference count: {meta.reference_count})."
                    )
                with self._queue_lock(index):
                    self._write_slot(index, QueueMetadata())
                self._write_count(max(count - 1, 0))
                self._drop_queue_lock(index)
                return
        raise MFError(f"Message queue '{mqname}' not found.")

    def open(self, mqname: str) -> int:
        """Open a queue by name; returns its identifier."""
        self._require_connected()
        if not mqname:
            raise MFError("Invalid queue name.")
        with self._lock:
            _, metas = self._load()
            for index, meta in enumerate(metas[:self._slot_limit]):
                if meta.active and meta.name == mqname:
                    self._set_field(index, "reference_count", meta.reference_count + 1)
                    return index
        raise MFError(f"Message queue '{mqname}' not found.")

    def _checked(self, qid: int) -> QueueMetadata:
        self._require_connected()
        if not isinstance(qid, int) or not 0 <= qid < self._slot_limit:
            raise MFError("Invalid queue identifier.")
        meta = self._read_slot(qid)
        if not meta.active:
            raise MFError("Queue identifier does not refer to an active queue.")
        return meta

    def close(self, qid: int) -> None:
        """Give up one reference to an open queue."""
        self._checked(qid)
        with self._lock:
            meta = self._read_slot(qid)
            if meta.reference_count > 0:
                self._set_field(qid, "reference_count", meta.reference_count - 1)

    def send(self, qid: int, data) -> None:
        """Append one message; fails if the queue has no room for it."""
        payload = bytes(data)
        if not MIN_DATALEN <= len(payload) <= MAX_DATALEN:
            raise MFError(
                f"Message length must be between {MIN_DATALEN} and {MAX_DATALEN} bytes."
            )
        self._checked(qid)
        with self._queue_lock(qid):
            meta = self._read_slot(qid)
            if not meta.active:
                raise MFError("Queue identifier does not refer to an active queue.")
            total = _LENGTH.size + len(payload)
            if meta.free_space < total:
                raise MFError(
                    "Not enough space in the queue to send the message. "
                    f"Needed: {total}, Available: {meta.free_space}"
                )
            tail = self._ring_write(meta, meta.tail, _LENGTH.pack(len(payload)) + payload)
            self._set_field(qid, "tail", tail)
            self._set_field(qid, "size", meta.size + total)

    def recv(self, qid: int, bufsize: int = MAX_DATALEN) -> bytes:
        """Take the oldest message; fails if the queue is empty or it exceeds bufsize."""
        self._checked(qid)
        with self._queue_lock(qid):
            meta = self._read_slot(qid)
            if not meta.active:
                raise MFError("Queue identifier does not refer to an active queue.")
            if meta.size == 0:
                raise MFError("The queue is empty.")
            header, pos = self._ring_read(meta, meta.head, _LENGTH.size)
            (length,) = _LENGTH.unpack(header)
            if bufsize < length:
                raise MFError(f"Buffer too small: Needed {length}, Provided {bufsize}.")
            data, pos = self._ring_read(meta, pos, length)
            self._set_field(qid, "head", pos)
            self._set_field(qid, "size", meta.size - _LENGTH.size - length)
            return data

    def print_queues(self) -> None:
        """Print every active queue with a short preview of each waiting message."""
        self._require_connected()
        _, metas = self._load()
        for index, meta in enumerate(metas[:self._slot_limit]):
            if not meta.active:
                continue
            with self._queue_lock(index):
                meta = self._read_slot(index)
                print(f"Queue '{meta.name}':")
                pos, left = meta.head, meta.size
                while left >= _LENGTH.size:
                    header, pos = self._ring_read(meta, pos, _LENGTH.size)
                    (length,) = _LENGTH.unpack(header)
                    data, pos = self._ring_read(meta, pos, length)
                    left -= _LENGTH.size + length
                    print(f"Message Size: {length}, Preview: {_preview(data)}")