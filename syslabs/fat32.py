"""Reading and modifying the root directory of FAT32 disk images."""

from __future__ import annotations

import io
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional, Tuple

SECTOR_SIZE = 512
DIR_ENTRY_SIZE = 32

ATTR_VOLUME_ID = 0x08
ATTR_DIRECTORY = 0x10
ATTR_ARCHIVE = 0x20

END_OF_CHAIN = 0x0FFFFFF8
CHAIN_END_MARK = 0x0FFFFFFF
CLUSTER_MASK = 0x0FFFFFFF
DELETED_MARK = 0xE5

_DIR_ENTRY = struct.Struct("<11sBBBHHHHHHHI")
_FAT_ENTRY = struct.Struct("<I")

_Slot = Tuple[int, int, "DirEntry"]


class FatError(Exception):
    """Raised when the disk image cannot be read or changed as asked."""


@dataclass(frozen=True)
class BootSector:
    """The fields of a FAT32 boot sector that the image code relies on."""

    bytes_per_sector: int
    sectors_per_cluster: int
    reserved_sectors: int
    number_of_fats: int
    total_sectors: int
    sectors_per_fat: int
    root_cluster: int
    total_clusters: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "BootSector":
        if len(data) < SECTOR_SIZE:
            raise FatError("could not read boot sector")
        bps, spc, reserved, nfats = struct.unpack_from("<HBHB", data, 11)
        total, spf = struct.unpack_from("<II", data, 32)
        (root,) = struct.unpack_from("<I", data, 44)
        if spc == 0:
            raise FatError("invalid boot sector: zero sectors per cluster")
        data_sectors = total - reserved - spf * nfats
        if data_sectors < 0:
            raise FatError("invalid boot sector: no data region")
        return cls(bps, spc, reserved, nfats, total, spf, root, data_sectors // spc)

    @property
    def first_data_sector(self) -> int:
        return self.reserved_sectors + self.number_of_fats * self.sectors_per_fat

    @property
    def cluster_bytes(self) -> int:
        return self.sectors_per_cluster * SECTOR_SIZE


@dataclass
class DirEntry:
    """A 32-byte short-name directory entry."""

    name: bytes
    attr: int = 0
    ntres: int = 0
    crt_time_tenth: int = 0
    crt_time: int = 0
    crt_date: int = 0
    lst_acc_date: int = 0
    fst_clus_hi: int = 0
    wrt_time: int = 0
    wrt_date: int = 0
    fst_clus_lo: int = 0
    file_size: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "DirEntry":
        if len(data) < DIR_ENTRY_SIZE:
            raise FatError("directory entry is shorter than 32 bytes")
        return cls(*_DIR_ENTRY.unpack_from(data))

    def to_bytes(self) -> bytes:
        return _DIR_ENTRY.pack(
            self.name,
            self.attr,
            self.ntres,
            self.crt_time_tenth,
            self.crt_time,
            self.crt_date,
            self.lst_acc_date,
            self.fst_clus_hi,
            self.wrt_time,
            self.wrt_date,
            self.fst_clus_lo,
            self.file_size,
        )

    @property
    def first_cluster(self) -> int:
        return (self.fst_clus_hi << 16) | self.fst_clus_lo

    @first_cluster.setter
    def first_cluster(self, cluster: int) -> None:
        self.fst_clus_hi = (cluster >> 16) & 0xFFFF
        self.fst_clus_lo = cluster & 0xFFFF

    @property
    def is_end(self) -> bool:
        return self.name[0] == 0x00

    @property
    def is_deleted(self) -> bool:
        return self.name[0] == DELETED_MARK

    @property
    def is_volume_label(self) -> bool:
        return bool(self.attr & ATTR_VOLUME_ID)

    def full_name(self) -> str:
        """Base name and extension joined without a dot, padding removed."""
        base = self.name[:8].split(b" ", 1)[0].split(b"\0", 1)[0]
        ext = self.name[8:11].split(b" ", 1)[0].split(b"\0", 1)[0]
        return (base + ext).decode("latin-1").rstrip(" ")


class Fat32Image:
    """A FAT32 disk image opened for reading and writing."""

    def __init__(self, handle: BinaryIO, boot: BootSector) -> None:
        self._handle = handle
        self.boot = boot

    @classmethod
    def open(cls, path) -> "Fat32Image":
        handle = io.open(path, "r+b")
        try:
            boot = BootSector.from_bytes(handle.read(SECTOR_SIZE))
        except BaseException:
            handle.close()
            raise
        return cls(handle, boot)

    def close(self) -> None:
        self._handle.close()

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def __enter__(self) -> "Fat32Image":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # Sector and FAT access

    def read_sector(self, snum: int) -> bytes:
        if snum < 0:
            raise FatError(f"invalid sector {snum}")
        self._handle.seek(snum * SECTOR_SIZE)
        data = self._handle.read(SECTOR_SIZE)
        if len(data) != SECTOR_SIZE:
            raise FatError(f"could not read sector {snum}")
        return data

    def write_sector(self, snum: int, data) -> None:
        if len(data) != SECTOR_SIZE:
            raise ValueError(f"a sector is {SECTOR_SIZE} bytes, got {len(data)}")
        if snum < 0:
            raise FatError(f"invalid sector {snum}")
        self._handle.seek(snum * SECTOR_SIZE)
        self._handle.write(data)
        self._handle.flush()
        os.fsync(self._handle.fileno())

    def cluster_sector(self, cluster: int) -> int:
        if cluster < 2:
            raise FatError(f"invalid cluster {cluster}")
        return self.boot.first_data_sector + (cluster - 2) * self.boot.sectors_per_cluster

    def _fat_position(self, cluster: int) -> Tuple[int, int]:
        offset = cluster * 4
        return self.boot.reserved_sectors + offset // SECTOR_SIZE, offset % SECTOR_SIZE

    def _fat_entry(self, cluster: int) -> int:
        snum, offset = self._fat_position(cluster)
        return _FAT_ENTRY.unpack_from(self.read_sector(snum), offset)[0]

    def _set_fat_entry(self, cluster: int, value: int) -> None:
        snum, offset = self._fat_position(cluster)
        sector = bytearray(self.read_sector(snum))
        _FAT_ENTRY.pack_into(sector, offset, value)
        self.write_sector(snum, sector)

    def next_cluster(self, cluster: int) -> int:
        return self._fat_entry(cluster) & CLUSTER_MASK

    def _chain(self, start: int) -> Iterator[int]:
        seen = set()
        cluster = start
        while 2 <= cluster < END_OF_CHAIN:
            if cluster in seen:
                raise FatError(f"cluster chain loops at cluster {cluster}")
            seen.add(cluster)
            yield cluster
            cluster = self.next_cluster(cluster)

    def allocate_cluster(self) -> int:
        for cluster in range(2, self.boot.total_clusters + 2):
            if self._fat_entry(cluster) == 0:
                self._set_fat_entry(cluster, CHAIN_END_MARK)
                self.clear_cluster(cluster)
                return cluster
        raise FatError("Failed to allocate new cluster.")

    def free_cluster(self, cluster: int) -> None:
        self._set_fat_entry(cluster, 0)

    def clear_cluster(self, cluster: int) -> None:
        zero = bytes(SECTOR_SIZE)
        base = self.cluster_sector(cluster)
        for snum in range(base, base + self.boot.sectors_per_cluster):
            self.write_sector(snum, zero)

    def _next_or_extend(self, cluster: int) -> int:
        following = self.next_cluster(cluster)
        if 2 <= following < END_OF_CHAIN:
            return following
        new = self.allocate_cluster()
        self._set_fat_entry(cluster, new)
        return new

    # Root directory

    def _dir_slots(self) -> Iterator[_Slot]:
        for cluster in self._chain(self.boot.root_cluster):
            base = self.cluster_sector(cluster)
            for snum in range(base, base + self.boot.sectors_per_cluster):
                sector = self.read_sector(snum)
                for offset in range(0, SECTOR_SIZE, DIR_ENTRY_SIZE):
                    yield snum, offset, DirEntry.from_bytes(
                        sector[offset:offset + DIR_ENTRY_SIZE]
                    )

    def _files(self) -> Iterator[_Slot]:
        for slot in self._dir_slots():
            entry = slot[2]
            if entry.is_end:
                return
            if entry.is_deleted or entry.is_volume_label:
                continue
            yield slot

    def _search(self, filename: str) -> Optional[_Slot]:
        return next((s for s in self._files() if s[2].full_name() == filename), None)

    def _locate(self, filename: str) -> _Slot:
        slot = self._search(filename)
        if slot is None:
            raise FatError(f"File NOT found: {filename}")
        return slot

    def _write_entry(self, snum: int, offset: int, entry: DirEntry) -> None:
        sector = bytearray(self.read_sector(snum))
        sector[offset:offset + DIR_ENTRY_SIZE] = entry.to_bytes()
        self.write_sector(snum, sector)

    def list_entries(self) -> list:
        return [entry for _, _, entry in self._files()]

    def find_entry(self, filename: str) -> Optional[DirEntry]:
        slot = self._search(filename)
        return None if slot is None else slot[2]

    def read_file(self, filename: str) -> bytes:
        entry = self._locate(filename)[2]
        size = entry.file_size
        data = bytearray()
        if size == 0:
            return b""
        for cluster in self._chain(entry.first_cluster):
            base = self.cluster_sector(cluster)
            for snum in range(base, base + self.boot.sectors_per_cluster):
                data += self.read_sector(snum)
            if len(data) >= size:
                break
        return bytes(data[:size])

    def create_file(self, filename: str) -> DirEntry:
        name = f"{filename:<11.11}".encode("latin-1")
        for snum, offset, entry in self._dir_slots():
            if entry.is_end or entry.is_deleted:
                new = DirEntry(name=name, attr=ATTR_ARCHIVE)
                self._write_entry(snum, offset, new)
                return new
        raise FatError("No free directory entries available.")

    def delete_file(self, filename: str) -> None:
        snum, offset, entry = self._locate(filename)
        for cluster in list(self._chain(entry.first_cluster)):
            self.free_cluster(cluster)
        entry.name = bytes([DELETED_MARK]) + entry.name[1:]
        self._write_entry(snum, offset, entry)

    def write_data(self, filename: str, offset: int, length: int, byte: int) -> DirEntry:
        """Fill length bytes from offset with byte, growing the file as needed."""
        if offset < 0 or length < 0:
            raise ValueError("offset and length must not be negative")
        if offset + length > 0xFFFFFFFF:
            raise ValueError("file would exceed the FAT32 size limit")
        if not 0 <= byte <= 0xFF:
            raise ValueError("byte must be between 0 and 255")
        snum, entry_offset, entry = self._locate(filename)
        if length:
            cluster = entry.first_cluster
            if cluster < 2:
                cluster = self.allocate_cluster()
                entry.first_cluster = cluster
            cluster_bytes = self.boot.cluster_bytes
            for _ in range(offset // cluster_bytes):
                cluster = self._next_or_extend(cluster)
            within = offset % cluster_bytes
            remaining = length
            fill = bytes([byte])
            while True:
                index, start = divmod(within, SECTOR_SIZE)
                sector_no = self.cluster_sector(cluster) + index
                chunk = min(SECTOR_SIZE - start, remaining)
                sector = bytearray(self.read_sector(sector_no))
                sector[start:start + chunk] = fill * chunk
                self.write_sector(sector_no, sector)
                remaining -= chunk
                if not remaining:
                    break
                within += chunk
                if within == cluster_bytes:
                    cluster = self._next_or_extend(cluster)
                    within = 0
        entry.file_size = max(entry.file_size, offset + length)
        self._write_entry(snum, entry_offset, entry)
        return entry


def format_ascii(data: bytes) -> str:
    """Printable bytes as characters, every other byte as a dot."""
    return "".join(chr(b) if 0x20 <= b < 0x7F else "." for b in data)


def format_hex(data: bytes) -> str:
    """Bytes as two-digit hex followed by a space, sixteen to a line."""
    parts = []
    for position, value in enumerate(data, 1):
        parts.append(f"{value:02x} ")
        if position % 16 == 0:
            parts.append("\n")
    return "".join(parts)