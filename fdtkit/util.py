"""Shared helpers for the device-tree tools: path and string handling,
escape decoding, type-format decoding, blob I/O and usage text."""

from __future__ import annotations

import struct
import sys
from dataclasses import dataclass
from pathlib import Path

__all__ = [
    "FatalError",
    "LongOption",
    "escape_path",
    "join_path",
    "is_printable_string",
    "get_escape_char",
    "decode_type",
    "read_fdt",
    "write_fdt",
    "format_property_data",
    "format_usage",
    "USAGE_TYPE_MSG",
]

USAGE_TYPE_MSG = (
    "<type>\ts=string, i=int, u=unsigned, x=hex, r=raw\n"
    "\tOptional modifier prefix:\n"
    "\t\thh or b=byte, h=2 byte, l=4 byte (default)"
)

_ARG_PLACEHOLDER = "<arg>"
_OCT_DIGITS = "01234567"
_HEX_DIGITS = "0123456789abcdefABCDEF"
_SIMPLE_ESCAPES = {
    "a": "\a",
    "b": "\b",
    "t": "\t",
    "n": "\n",
    "v": "\v",
    "f": "\f",
    "r": "\r",
}


class FatalError(Exception):
    """An unrecoverable error in processing a device tree."""


@dataclass(frozen=True)
class LongOption:
    """A command-line option description used for usage text."""

    name: str
    has_arg: bool = False
    short: str | None = None


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def escape_path(path: str) -> str:
    """Return *path* with every space escaped by a backslash."""
    return path.replace(" ", "\\ ")


def join_path(path: str, name: str) -> str:
    """Join a directory and a file name with exactly one slash between them."""
    if path.endswith("/"):
        return path + name
    return f"{path}/{name}"


def is_printable_string(data: bytes) -> bool:
    """Whether *data* is one or more non-empty, NUL-terminated printable strings."""
    if not data or data[-1] != 0:
        return False
    return all(
        segment and all(_isprint(b) for b in segment)
        for segment in data[:-1].split(b"\0")
    )


def _take_digits(s: str, start: int, digits: str, limit: int) -> str:
    end = start
    while end < len(s) and end - start < limit and s[end] in digits:
        end += 1
    return s[start:end]


def get_escape_char(s: str, i: int) -> tuple[str, int]:
    """Decode the escape sequence starting at index *i* (just after a backslash).

    Returns the decoded character and the index just past the sequence.
    """
    if i >= len(s):
        return "\0", i + 1
    c = s[i]
    if c in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[c], i + 1
    if c in _OCT_DIGITS:
        digits = _take_digits(s, i, _OCT_DIGITS, 3)
        return chr(int(digits, 8) & 0xFF), i + len(digits)
    if c == "x":
        digits = _take_digits(s, i + 1, _HEX_DIGITS, 2)
        if not digits:
            raise FatalError("\\x used with no following hex digits")
        return chr(int(digits, 16)), i + 1 + len(digits)
    return c, i + 1


def decode_type(fmt: str) -> tuple[str, int]:
    """Decode a data-type format such as ``"x"``, ``"hx"`` or ``"bu"``.

    Returns ``(type_char, size)`` where size is -1 when not fixed.
    Raises ValueError for an invalid format.
    """
    if not fmt:
        raise ValueError("empty type format")
    pos = 0
    qualifier = ""
    if fmt[0] in "hlLb":
        qualifier = fmt[0]
        pos = 1
        if pos < len(fmt) and fmt[pos] == qualifier:
            pos += 1
            if qualifier == "h":
                qualifier = "b"
    if pos >= len(fmt) or fmt[pos] not in "iuxsr":
        raise ValueError(f"invalid type format {fmt!r}")
    type_char = fmt[pos]
    pos += 1
    if pos != len(fmt):
        raise ValueError(f"invalid type format {fmt!r}")
    size = -1
    if type_char not in "sr":
        size = {"b": 1, "h": 2, "l": 4}.get(qualifier, -1)
    return type_char, size


def read_fdt(filename: str | Path) -> bytes:
    """Read a whole device-tree blob from a file, or from stdin for ``"-"``."""
    if str(filename) == "-":
        return sys.stdin.buffer.read()
    return Path(filename).read_bytes()


def write_fdt(filename: str | Path, blob: bytes) -> None:
    """Write the blob's ``totalsize`` bytes to a file, or to stdout for ``"-"``."""
    if len(blob) < 8:
        raise ValueError("blob too short to hold a device-tree header")
    (totalsize,) = struct.unpack_from(">I", blob, 4)
    payload = bytes(blob[:totalsize])
    if str(filename) == "-":
        sys.stdout.buffer.write(payload)
        sys.stdout.buffer.flush()
        return
    Path(filename).write_bytes(payload)


def format_property_data(data: bytes) -> str:
    """Render property data as strings, 32-bit cells or bytes.

    Empty data renders as an empty string.
    """
    if not data:
        return ""
    if is_printable_string(data):
        strings = data[:-1].split(b"\0")
        return " = " + ", ".join(f'"{s.decode("ascii")}"' for s in strings)
    if len(data) % 4 == 0:
        cells = struct.unpack(f">{len(data) // 4}I", data)
        return " = <" + " ".join(f"0x{c:08x}" for c in cells) + ">"
    return " = [" + " ".join(f"{b:02x}" for b in data) + "]"


def format_usage(synopsis, short_opts, long_opts, opts_help, errmsg=None) -> str:
    """Build the standard usage text for a command."""
    long_opts = list(long_opts)
    opts_help = list(opts_help)
    if len(opts_help) != len(long_opts):
        raise ValueError("each option needs exactly one help string")

    arg_len = len(_ARG_PLACEHOLDER) + 1
    optlen = max(
        (len(opt.name) + 1 + (arg_len if opt.has_arg else 0) for opt in long_opts),
        default=0,
    )

    lines = [f"Usage: {synopsis}\n\nOptions: -[{short_opts}]\n"]
    for opt, help_text in zip(long_opts, opts_help):
        prefix = f"  -{opt.short}, " if opt.short else "      "
        if opt.has_arg:
            pad = " " * max(optlen - len(opt.name) - arg_len, 0)
            flag = f"--{opt.name} {_ARG_PLACEHOLDER}{pad}"
        else:
            flag = "--" + opt.name.ljust(optlen)
        lines.append(f"{prefix}{flag}{help_text}\n")
    if errmsg:
        lines.append(f"\nError: {errmsg}\n")
    return "".join(lines)