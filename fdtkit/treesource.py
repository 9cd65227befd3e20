"""Writing a live device tree back out as device-tree source text."""

from __future__ import annotations

import struct
from typing import IO, Optional

from .livetree import DtInfo, Marker, MarkerType, Node, Property
from .srcpos import SourcePosition

__all__ = ["dt_to_source"]

_CELL_SIZE = 4

_DELIM_START = {
    MarkerType.TYPE_UINT8: "[",
    MarkerType.TYPE_UINT16: "/bits/ 16 <",
    MarkerType.TYPE_UINT32: "<",
    MarkerType.TYPE_UINT64: "/bits/ 64 <",
    MarkerType.TYPE_STRING: "",
}
_DELIM_END = {
    MarkerType.TYPE_UINT8: "]",
    MarkerType.TYPE_UINT16: ">",
    MarkerType.TYPE_UINT32: ">",
    MarkerType.TYPE_UINT64: ">",
    MarkerType.TYPE_STRING: "",
}
_STRING_ESCAPES = {
    0x07: "\\a",
    0x08: "\\b",
    0x09: "\\t",
    0x0A: "\\n",
    0x0B: "\\v",
    0x0C: "\\f",
    0x0D: "\\r",
    0x5C: "\\\\",
    0x22: '\\"',
    0x00: "\\0",
}
_INT_FORMATS = {2: ">H", 4: ">I", 8: ">Q"}


def _isprint(byte: int) -> bool:
    return 0x20 <= byte <= 0x7E


def _is_string_byte(byte: int) -> bool:
    return _isprint(byte) or byte == 0 or byte in b"\a\b\t\n\v\f\r"


def _annotation(pos: Optional[SourcePosition], level: int, first: bool) -> Optional[str]:
    if pos is None:
        return "<no-file>:<no-line>" if level > 1 else None
    return pos.string_first(level) if first else pos.string_last(level)


def _comment(pos: Optional[SourcePosition], annotate: int, first: bool) -> str:
    if not annotate:
        return ""
    text = _annotation(pos, annotate, first)
    return f" /* {text} */" if text is not None else ""


def _format_string(data: bytes) -> str:
    if not data:
        return ""
    if data[-1] != 0:
        raise ValueError("string property data is not NUL-terminated")
    pieces = []
    for byte in data[:-1]:
        if byte in _STRING_ESCAPES:
            pieces.append(_STRING_ESCAPES[byte])
        elif _isprint(byte):
            pieces.append(chr(byte))
        else:
            pieces.append(f"\\x{byte:02x}")
    return '"' + "".join(pieces) + '"'


def _format_ints(data: bytes, width: int) -> str:
    if len(data) % width:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")
    if width == 1:
        return " ".join(f"{b:02x}" for b in data)
    fmt = _INT_FORMATS[width]
    values = struct.unpack(f">{len(data) // width}{fmt[1]}", data)
    return " ".join(f"0x{v:02x}" for v in values)


def _add_string_markers(prop: Property) -> None:
    val = prop.val.val
    pos = val.index(b"\0") + 1
    while pos < len(val):
        prop.val.markers.append(Marker(pos, MarkerType.TYPE_STRING))
        end = val.find(b"\0", pos)
        pos = (end if end >= 0 else len(val)) + 1


def _guess_value_type(prop: Property) -> MarkerType:
    val = prop.val.val
    length = len(val)
    nnotstring = sum(1 for b in val if not _is_string_byte(b))
    nnul = val.count(0)
    nnotstringlbl = 0
    nnotcelllbl = 0
    for marker in prop.val.markers_of_type(MarkerType.LABEL):
        if marker.offset > 0 and val[marker.offset - 1] != 0:
            nnotstringlbl += 1
        if marker.offset % _CELL_SIZE:
            nnotcelllbl += 1

    if val[-1] == 0 and nnotstring == 0 and nnul <= length - nnul and nnotstringlbl == 0:
        if nnul > 1:
            _add_string_markers(prop)
        return MarkerType.TYPE_STRING
    if length % _CELL_SIZE == 0 and nnotcelllbl == 0:
        return MarkerType.TYPE_UINT32
    return MarkerType.TYPE_UINT8


def _type_marker_length(chain: list[Marker], index: int) -> int:
    for later in chain[index + 1:]:
        if MarkerType(later.type).is_type:
            return later.offset - chain[index].offset
    return 0


def _format_propval(prop: Property, annotate: int) -> str:
    val = prop.val.val
    length = len(val)
    if length == 0:
        return ";" + _comment(prop.srcpos, annotate, True) + "\n"

    parts = [" ="]
    if not any(MarkerType(m.type).is_type for m in prop.val.markers):
        guessed = _guess_value_type(prop)
        chain = [Marker(0, guessed)] + list(prop.val.markers)
    else:
        chain = list(prop.val.markers)

    emit_type: Optional[MarkerType] = None
    for index, marker in enumerate(chain):
        mtype = MarkerType(marker.type)
        nxt = chain[index + 1] if index + 1 < len(chain) else None
        chunk_len = (nxt.offset if nxt is not None else length) - marker.offset
        data_len = _type_marker_length(chain, index) or length - marker.offset
        chunk = val[marker.offset:marker.offset + max(chunk_len, 0)]

        if mtype.is_type:
            emit_type = mtype
            parts.append(" " + _DELIM_START[emit_type])
        elif mtype == MarkerType.LABEL:
            parts.append(f" {marker.ref}:")

        if emit_type is None or chunk_len <= 0:
            continue

        if emit_type == MarkerType.TYPE_UINT16:
            parts.append(_format_ints(chunk, 2))
        elif emit_type == MarkerType.TYPE_UINT32:
            phandle = next(
                (
                    ref
                    for ref in prop.val.markers_of_type(MarkerType.REF_PHANDLE)
                    if ref.offset == marker.offset
                ),
                None,
            )
            if phandle is not None:
                ref = phandle.ref or ""
                parts.append(f"&{{{ref}}}" if ref.startswith("/") else f"&{ref}")
                if chunk_len > _CELL_SIZE:
                    parts.append(" " + _format_ints(chunk[_CELL_SIZE:], 4))
            else:
                parts.append(_format_ints(chunk, 4))
            if data_len > chunk_len:
                parts.append(" ")
        elif emit_type == MarkerType.TYPE_UINT64:
            parts.append(_format_ints(chunk, 8))
        elif emit_type == MarkerType.TYPE_STRING:
            parts.append(_format_string(chunk))
        else:
            parts.append(_format_ints(chunk, 1))

        if chunk_len == data_len:
            end = marker.offset + chunk_len
            parts.append(_DELIM_END[emit_type] + ("" if end == length else ","))
            emit_type = None

    parts.append(";" + _comment(prop.srcpos, annotate, True) + "\n")
    return "".join(parts)


def _labels_prefix(labels) -> str:
    return "".join(f"{lab.label}: " for lab in labels if not lab.deleted)


def _write_node(stream: IO[str], node: Node, level: int, annotate: int) -> None:
    indent = "\t" * level
    name = node.name if node.name else "/"
    stream.write(
        f"{indent}{_labels_prefix(node.labels)}{name} {{"
        + _comment(node.srcpos, annotate, True)
        + "\n"
    )
    for prop in node.live_properties:
        stream.write(f"{indent}\t{_labels_prefix(prop.labels)}{prop.name}")
        stream.write(_format_propval(prop, annotate))
    for child in node.live_children:
        stream.write("\n")
        _write_node(stream, child, level + 1, annotate)
    stream.write(f"{indent}}};" + _comment(node.srcpos, annotate, False) + "\n")


def dt_to_source(dti: DtInfo, stream: IO[str], annotate: int = 0) -> None:
    """Write *dti* to *stream* as device-tree source.

    A non-zero *annotate* level adds source-position comments.
    """
    stream.write("/dts-v1/;\n\n")
    for entry in dti.reservelist:
        stream.write(
            f"{_labels_prefix(entry.labels)}/memreserve/\t"
            f"0x{entry.address:016x} 0x{entry.size:016x};\n"
        )
    _write_node(stream, dti.dt, 0, annotate)