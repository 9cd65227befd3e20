"""Writing a live device tree out as YAML."""

from __future__ import annotations

import struct
from typing import IO, Iterator

import yaml
from yaml.events import (
    DocumentEndEvent,
    DocumentStartEvent,
    MappingEndEvent,
    MappingStartEvent,
    ScalarEvent,
    SequenceEndEvent,
    SequenceStartEvent,
    StreamEndEvent,
    StreamStartEvent,
)

from .livetree import DtInfo, Marker, MarkerType, Node, Property
from .util import FatalError

__all__ = ["dt_to_yaml"]

_STR_TAG = "tag:yaml.org,2002:str"
_INT_TAG = "tag:yaml.org,2002:int"
_BOOL_TAG = "tag:yaml.org,2002:bool"
_SEQ_TAG = "tag:yaml.org,2002:seq"
_MAP_TAG = "tag:yaml.org,2002:map"

_WIDTH_TAGS = {1: "!u8", 2: "!u16", 4: "!u32", 8: "!u64"}
_WIDTH_FORMATS = {1: "B", 2: "H", 4: "I", 8: "Q"}


def _propval_int(
    markers: list[Marker], data: bytes, seq_offset: int, width: int
) -> Iterator:
    tag = _WIDTH_TAGS.get(width)
    if tag is None:
        raise FatalError(f"Invalid width {width}")
    if len(data) % width:
        raise ValueError(f"data length {len(data)} is not a multiple of {width}")

    yield SequenceStartEvent(None, tag, width == 4, flow_style=True)
    values = struct.unpack(f">{len(data) // width}{_WIDTH_FORMATS[width]}", data)
    phandle_offsets = {
        m.offset for m in markers if m.type == MarkerType.REF_PHANDLE
    } if width == 4 else set()
    for index, value in enumerate(values):
        text = f"0x{value:x}"
        if seq_offset + index * width in phandle_offsets:
            yield ScalarEvent(None, "!phandle", (False, False), text)
        else:
            yield ScalarEvent(None, _INT_TAG, (True, True), text)
    yield SequenceEndEvent()


def _propval_string(data: bytes) -> Iterator:
    if not data or data[-1] != 0:
        raise ValueError("string property data is not NUL-terminated")
    if any(b > 0x7F for b in data):
        raise ValueError("string property data is not 7-bit ASCII")
    yield ScalarEvent(None, _STR_TAG, (False, True), data[:-1].decode("ascii"), style='"')


def _type_marker_length(markers: list[Marker], index: int) -> int:
    for later in markers[index + 1:]:
        if MarkerType(later.type).is_type:
            return later.offset - markers[index].offset
    return 0


def _propval(prop: Property) -> Iterator:
    yield ScalarEvent(None, _STR_TAG, (True, True), prop.name)

    val = prop.val.val
    remaining = len(val)
    if remaining == 0:
        yield ScalarEvent(None, _BOOL_TAG, (True, False), "true")
        return

    markers = list(prop.val.markers)
    if not markers:
        raise FatalError(f"No markers present in property '{prop.name}' value")

    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=True)
    for index, marker in enumerate(markers):
        mtype = MarkerType(marker.type)
        if not mtype.is_type:
            continue
        chunk_len = _type_marker_length(markers, index) or remaining
        if chunk_len <= 0:
            raise ValueError(f"empty typed chunk in property '{prop.name}'")
        remaining -= chunk_len
        chunk = val[marker.offset:marker.offset + chunk_len]

        if mtype == MarkerType.TYPE_UINT16:
            yield from _propval_int(markers, chunk, marker.offset, 2)
        elif mtype == MarkerType.TYPE_UINT32:
            yield from _propval_int(markers, chunk, marker.offset, 4)
        elif mtype == MarkerType.TYPE_UINT64:
            yield from _propval_int(markers, chunk, marker.offset, 8)
        elif mtype == MarkerType.TYPE_STRING:
            yield from _propval_string(chunk)
        else:
            yield from _propval_int(markers, chunk, marker.offset, 1)
    yield SequenceEndEvent()


def _tree(node: Node) -> Iterator:
    if node.deleted:
        return
    yield MappingStartEvent(None, _MAP_TAG, True, flow_style=False)
    for prop in node.live_properties:
        yield from _propval(prop)
    for child in node.live_children:
        yield ScalarEvent(None, _STR_TAG, (True, False), child.name or "")
        yield from _tree(child)
    yield MappingEndEvent()


def _events(dti: DtInfo) -> Iterator:
    yield StreamStartEvent()
    yield DocumentStartEvent(explicit=True)
    yield SequenceStartEvent(None, _SEQ_TAG, True, flow_style=False)
    yield from _tree(dti.dt)
    yield SequenceEndEvent()
    yield DocumentEndEvent(explicit=True)
    yield StreamEndEvent()


def dt_to_yaml(dti: DtInfo, stream: IO[str]) -> None:
    """Write *dti* to the text *stream* as a YAML document."""
    events = list(_events(dti))
    yaml.emit(events, stream)