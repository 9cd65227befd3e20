import io
import struct
import sys

import pytest

from fdtkit.util import (
    FatalError,
    LongOption,
    decode_type,
    escape_path,
    format_property_data,
    format_usage,
    get_escape_char,
    is_printable_string,
    join_path,
    read_fdt,
    write_fdt,
)


@pytest.mark.parametrize(
    "modifier,size",
    [("", -1), ("b", 1), ("hh", 1), ("h", 2), ("l", 4)],
)
def test_decode_type_sizes(modifier, size):
    for ch in "iux":
        assert decode_type(modifier + ch) == (ch, size)
    assert decode_type(modifier + "s") == ("s", -1)
    assert decode_type(modifier + "r") == ("r", -1)


def test_decode_type_empty_fails():
    with pytest.raises(ValueError):
        decode_type("")


def test_decode_type_every_other_char_fails():
    failures = 0
    candidates = [chr(c) for c in range(ord(" "), 127) if chr(c) not in "iuxsr"]
    for ch in candidates:
        with pytest.raises(ValueError):
            decode_type(ch)
        failures += 1
    assert failures == len(candidates)


@pytest.mark.parametrize(
    "fmt",
    [
        "sx",
        "ihh",
        "xb",
        "He has all the virtues I dislike and none of the vices I admire.",
    ],
)
def test_decode_type_trailing_garbage_fails(fmt):
    with pytest.raises(ValueError):
        decode_type(fmt)


def test_decode_type_long_long_and_capital_l():
    assert decode_type("llx") == ("x", 4)
    assert decode_type("Lx") == ("x", -1)


def test_escape_path():
    assert escape_path("a b/c d") == "a\\ b/c\\ d"
    assert escape_path("plain") == "plain"


def test_join_path():
    assert join_path("dir", "file") == "dir/file"
    assert join_path("dir/", "file") == "dir/file"
    assert join_path("", "file") == "/file"


@pytest.mark.parametrize(
    "data,expected",
    [
        (b"", False),
        (b"hello", False),
        (b"hello\0", True),
        (b"a\0b\0", True),
        (b"a\0\0", False),
        (b"\0", False),
        (b"\x01\0", False),
    ],
)
def test_is_printable_string(data, expected):
    assert is_printable_string(data) is expected


@pytest.mark.parametrize(
    "text,index,expected",
    [
        ("n", 0, ("\n", 1)),
        ("a", 0, ("\a", 1)),
        ("r", 0, ("\r", 1)),
        ("\\", 0, ("\\", 1)),
        ('"', 0, ('"', 1)),
        ("101z", 0, ("A", 3)),
        ("0", 0, ("\0", 1)),
        ("1234", 0, ("S", 3)),
        ("x41", 0, ("A", 3)),
        ("xde", 0, ("\xde", 3)),
        ("x4g", 0, ("\x04", 2)),
        ("abcn", 3, ("\n", 4)),
    ],
)
def test_get_escape_char(text, index, expected):
    assert get_escape_char(text, index) == expected


def test_get_escape_char_hex_without_digits():
    with pytest.raises(FatalError):
        get_escape_char("xq", 0)


def test_format_property_data_strings():
    assert format_property_data(b"hello world\0") == ' = "hello world"'
    assert format_property_data(b"a\0bc\0") == ' = "a", "bc"'


def test_format_property_data_cells_and_bytes():
    assert format_property_data(struct.pack(">2I", 0xDEADBEEF, 1)) == (
        " = <0xdeadbeef 0x00000001>"
    )
    assert format_property_data(b"\x01\x02\x03") == " = [01 02 03]"
    assert format_property_data(b"") == ""


def _blob(totalsize, extra=b""):
    header = struct.pack(">II", 0xD00DFEED, totalsize)
    body = header + b"\xaa" * (totalsize - len(header))
    return body + extra


def test_write_and_read_fdt_round_trip(tmp_path):
    blob = _blob(16, extra=b"trailing")
    target = tmp_path / "out.dtb"
    write_fdt(target, blob)
    assert read_fdt(target) == blob[:16]
    assert read_fdt(str(target)) == blob[:16]


def test_write_fdt_to_stdout(monkeypatch):
    buffer = io.BytesIO()
    monkeypatch.setattr(sys, "stdout", io.TextIOWrapper(buffer))
    write_fdt("-", _blob(12, extra=b"xx"))
    assert buffer.getvalue() == _blob(12)


def test_read_fdt_from_stdin(monkeypatch):
    monkeypatch.setattr(sys, "stdin", io.TextIOWrapper(io.BytesIO(b"abc")))
    assert read_fdt("-") == b"abc"


def test_read_fdt_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_fdt(tmp_path / "missing.dtb")


def test_write_fdt_short_blob(tmp_path):
    with pytest.raises(ValueError):
        write_fdt(tmp_path / "x.dtb", b"\0\0")


def test_format_usage_layout():
    opts = [
        LongOption("type", has_arg=True, short="t"),
        LongOption("help", short="h"),
        LongOption("quiet"),
    ]
    text = format_usage("prog <file>", "t:h", opts, ["Type", "Help", "Quiet"])
    assert text == (
        "Usage: prog <file>\n"
        "\n"
        "Options: -[t:h]\n"
        "  -t, --type <arg> Type\n"
        "  -h, --help       Help\n"
        "      --quiet      Quiet\n"
    )


def test_format_usage_error_message():
    text = format_usage("p", "h", [LongOption("help", short="h")], ["Help"], "bad")
    assert text.endswith("\nError: bad\n")


def test_format_usage_mismatched_help():
    with pytest.raises(ValueError):
        format_usage("p", "h", [LongOption("help", short="h")], [])