"""Command-line tool for listing, reading and changing files on a FAT32 image."""

from __future__ import annotations

import sys
from typing import List, Optional

from .fat32 import Fat32Image, FatError, format_ascii, format_hex

_PROG = "fatmod"


def _usage(text: str) -> int:
    print(f"Usage: {_PROG} {text}", file=sys.stderr)
    return 1


def _list(image: Fat32Image) -> int:
    for entry in image.list_entries():
        print(f"{entry.full_name()} Size: {entry.file_size} bytes")
    return 0


def _read(image: Fat32Image, rest: List[str]) -> int:
    if len(rest) < 2:
        return _usage("<disk_image> -r -a/-b <filename>")
    mode, filename = rest[0], rest[1]
    if mode not in ("-a", "-b"):
        print("Invalid option for -r command. Please rewrite command", file=sys.stderr)
        return 1
    data = image.read_file(filename)
    if mode == "-a":
        print(format_ascii(data))
    else:
        text = format_hex(data)
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")
    return 0


def _create(image: Fat32Image, rest: List[str]) -> int:
    if not rest:
        return _usage("<disk_image> -c <filename>")
    image.create_file(rest[0])
    print(f"File created with name: {rest[0]}")
    return 0


def _delete(image: Fat32Image, rest: List[str]) -> int:
    if not rest:
        return _usage("<disk_image> -d <filename>")
    image.delete_file(rest[0])
    print(f"File deleted: {rest[0]}")
    return 0


def _write(image: Fat32Image, rest: List[str]) -> int:
    if len(rest) < 4:
        return _usage("<disk_image> -w <filename> <offset> <length> <byte>")
    filename = rest[0]
    try:
        offset = int(rest[1], 10)
        length = int(rest[2], 10)
        byte = int(rest[3], 10) & 0xFF
    except ValueError:
        return _usage("<disk_image> -w <filename> <offset> <length> <byte>")
    existing = image.find_entry(filename)
    old_size = existing.file_size if existing is not None else 0
    entry = image.write_data(filename, offset, length, byte)
    if entry.file_size > old_size:
        print(f"Updated filesize: {entry.file_size}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run one fatmod command; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        print(f"Example usage: {_PROG} <disk_image> <command> [options]", file=sys.stderr)
        return 1
    image_path, command, rest = args[0], args[1], args[2:]
    try:
        image = Fat32Image.open(image_path)
    except OSError as exc:
        print(f"Failed to open the disk image: {exc}", file=sys.stderr)
        return 1
    except FatError as exc:
        print(f"Err: {exc}", file=sys.stderr)
        return 1

    handlers = {
        "-l": lambda: _list(image),
        "-r": lambda: _read(image, rest),
        "-c": lambda: _create(image, rest),
        "-d": lambda: _delete(image, rest),
        "-w": lambda: _write(image, rest),
    }
    with image:
        handler = handlers.get(command)
        if handler is None:
            print("Unknown command. Please write command again", file=sys.stderr)
            return 1
        try:
            return handler()
        except (FatError, ValueError) as exc:
            print(f"Err: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    sys.exit(main())