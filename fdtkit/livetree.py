"""In-memory ("live") device tree: nodes, properties, labels and markers,
with the building, merging, lookup, sorting and overlay-generation
operations used by the compiler."""

from __future__ import annotations

import enum
import struct
import sys
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional

from .srcpos import SourcePosition
from .util import FatalError, get_escape_char, join_path

__all__ = [
    "MarkerType",
    "Marker",
    "Data",
    "Label",
    "Property",
    "Node",
    "ReserveEntry",
    "PhandleFormat",
    "DtInfo",
    "add_label",
    "delete_labels",
    "merge_nodes",
    "get_node_by_path",
    "get_node_by_label",
    "get_node_by_phandle",
    "get_node_by_ref",
    "get_property_by_label",
    "get_marker_label",
    "guess_boot_cpuid",
    "phandle_is_valid",
]

_CELL_SIZE = 4
_INT_FORMATS = {8: ">B", 16: ">H", 32: ">I", 64: ">Q"}


class MarkerType(enum.IntEnum):
    """Kinds of marker placed inside property data."""

    TYPE_NONE = 0
    REF_PATH = 1
    REF_PHANDLE = 2
    LABEL = 3
    TYPE_UINT8 = 4
    TYPE_UINT16 = 5
    TYPE_UINT32 = 6
    TYPE_UINT64 = 7
    TYPE_STRING = 8

    @property
    def is_type(self) -> bool:
        """Whether this marker describes the type of the data that follows."""
        return self >= MarkerType.TYPE_UINT8


class PhandleFormat(enum.IntFlag):
    """Which phandle properties to emit when a phandle is allocated."""

    LEGACY = 0x1
    EPAPR = 0x2
    BOTH = 0x3


def phandle_is_valid(phandle: int) -> bool:
    """A phandle is valid unless it is 0 or all ones."""
    return phandle not in (0, 0xFFFFFFFF)


@dataclass
class Marker:
    """A reference, label or type annotation at an offset in property data."""

    offset: int
    type: MarkerType
    ref: Optional[str] = None


@dataclass
class Data:
    """Raw property bytes together with their markers."""

    val: bytes = b""
    markers: list[Marker] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.val)

    def append(self, data: bytes) -> "Data":
        """Append raw bytes."""
        self.val = bytes(self.val) + bytes(data)
        return self

    def add_marker(self, type: MarkerType, ref: Optional[str] = None) -> "Data":
        """Add a marker at the current end of the data."""
        self.markers.append(Marker(len(self.val), MarkerType(type), ref))
        return self

    def append_integer(self, value: int, bits: int) -> "Data":
        """Append *value* as a big-endian integer of 8, 16, 32 or 64 bits."""
        fmt = _INT_FORMATS.get(bits)
        if fmt is None:
            raise ValueError(f"Invalid literal size {bits}")
        return self.append(struct.pack(fmt, value & ((1 << bits) - 1)))

    def append_cell(self, value: int) -> "Data":
        """Append a 32-bit big-endian cell."""
        return self.append_integer(value, 32)

    def markers_of_type(self, type: MarkerType) -> Iterator[Marker]:
        """Yield the markers of the given type, in order."""
        return (m for m in self.markers if m.type == type)


def _escaped_string_data(text: str) -> Data:
    """String data with backslash escapes decoded and a NUL terminator."""
    out = bytearray()
    i = 0
    while i < len(text):
        c = text[i]
        i += 1
        if c == "\\":
            c, i = get_escape_char(text, i)
        code = ord(c)
        out += bytes([code]) if code < 0x100 else c.encode("utf-8")
    out.append(0)
    return Data().add_marker(MarkerType.TYPE_STRING).append(bytes(out))


@dataclass(eq=False)
class Label:
    """A label attached to a node, property or reservation entry."""

    label: str
    deleted: bool = False


def _live(labels: Iterable[Label]) -> Iterator[Label]:
    return (lab for lab in labels if not lab.deleted)


def add_label(labels: list[Label], label: str) -> None:
    """Add *label* in front of *labels*, or revive it if already present."""
    for existing in labels:
        if existing.label == label:
            existing.deleted = False
            return
    labels.insert(0, Label(label))


def delete_labels(labels: Iterable[Label]) -> None:
    """Mark every label in the list as deleted."""
    for lab in _live(labels):
        lab.deleted = True


def _copy_pos(pos: Optional[SourcePosition]) -> Optional[SourcePosition]:
    return pos.copy() if pos is not None else None


def _extend_pos(
    pos: Optional[SourcePosition], tail: Optional[SourcePosition]
) -> Optional[SourcePosition]:
    return tail if pos is None else pos.extend(tail)


@dataclass(eq=False)
class Property:
    """A named property of a node."""

    name: str
    val: Data = field(default_factory=Data)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    srcpos: Optional[SourcePosition] = None

    def __post_init__(self) -> None:
        self.srcpos = _copy_pos(self.srcpos)

    def cell(self) -> int:
        """The value of a property holding exactly one 32-bit cell."""
        if len(self.val) != _CELL_SIZE:
            raise ValueError(f"property {self.name!r} is not a single cell")
        return struct.unpack(">I", self.val.val)[0]

    def cell_at(self, n: int) -> int:
        """The *n*-th 32-bit cell of the value."""
        if n < 0 or len(self.val) // _CELL_SIZE <= n:
            raise IndexError(f"property {self.name!r} has no cell {n}")
        return struct.unpack_from(">I", self.val.val, n * _CELL_SIZE)[0]

    def delete(self) -> None:
        """Mark the property and its labels deleted."""
        self.deleted = True
        delete_labels(self.labels)


@dataclass(eq=False)
class Node:
    """A device-tree node with its properties and children."""

    name: Optional[str] = None
    properties: list[Property] = field(default_factory=list)
    children: list["Node"] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)
    deleted: bool = False
    phandle: int = 0
    omit_if_unused: bool = False
    is_referenced: bool = False
    srcpos: Optional[SourcePosition] = None
    parent: Optional["Node"] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.srcpos = _copy_pos(self.srcpos)
        for child in self.children:
            child.parent = self

    @property
    def live_properties(self) -> list[Property]:
        """Properties that are not deleted."""
        return [p for p in self.properties if not p.deleted]

    @property
    def live_children(self) -> list["Node"]:
        """Children that are not deleted."""
        return [c for c in self.children if not c.deleted]

    @property
    def fullpath(self) -> str:
        """The absolute path of this node."""
        base = self.parent.fullpath if self.parent is not None else ""
        return join_path(base, self.name or "")

    def unit_name(self) -> str:
        """The part of the name after ``@``, or an empty string."""
        return (self.name or "").partition("@")[2]

    def add_property(self, prop: Property) -> None:
        """Append a property."""
        self.properties.append(prop)

    def get_property(self, name: str) -> Optional[Property]:
        """The live property called *name*, if any."""
        return next((p for p in self.live_properties if p.name == name), None)

    def delete_property_by_name(self, name: str) -> None:
        """Delete the first property called *name*."""
        for prop in self.properties:
            if prop.name == name:
                prop.delete()
                return

    def add_child(self, child: "Node") -> None:
        """Append a child node."""
        child.parent = self
        self.children.append(child)

    def get_subnode(self, name: str) -> Optional["Node"]:
        """The live child called *name*, if any."""
        return next((c for c in self.live_children if c.name == name), None)

    def delete_node_by_name(self, name: str) -> None:
        """Delete the first child called *name*."""
        for child in self.children:
            if child.name == name:
                child.delete()
                return

    def delete(self) -> None:
        """Mark this node, its subtree, properties and labels deleted."""
        self.deleted = True
        for child in self.live_children:
            child.delete()
        for prop in self.live_properties:
            prop.delete()
        delete_labels(self.labels)

    def append_to_property(self, name: str, data: bytes, type: MarkerType) -> None:
        """Append typed data to property *name*, creating it if needed."""
        prop = self.get_property(name)
        if prop is not None:
            prop.val.add_marker(type, name).append(data)
        else:
            self.add_property(
                Property(name, Data().add_marker(type, name).append(data))
            )


@dataclass(eq=False)
class ReserveEntry:
    """A memory reservation entry."""

    address: int
    size: int
    labels: list[Label] = field(default_factory=list)


def merge_nodes(old_node: Node, new_node: Node) -> Node:
    """Merge *new_node* into *old_node*; new values win on collision."""
    old_node.deleted = False

    for lab in new_node.labels:
        add_label(old_node.labels, lab.label)

    for new_prop in new_node.properties:
        if new_prop.deleted:
            old_node.delete_property_by_name(new_prop.name)
            continue
        for old_prop in old_node.properties:
            if old_prop.name == new_prop.name:
                for lab in new_prop.labels:
                    add_label(old_prop.labels, lab.label)
                old_prop.val = new_prop.val
                old_prop.deleted = False
                old_prop.srcpos = new_prop.srcpos
                break
        else:
            old_node.add_property(new_prop)
    new_node.properties = []

    children, new_node.children = new_node.children, []
    for new_child in children:
        new_child.parent = None
        if new_child.deleted:
            old_node.delete_node_by_name(new_child.name)
            continue
        for old_child in old_node.children:
            if old_child.name == new_child.name:
                merge_nodes(old_child, new_child)
                break
        else:
            old_node.add_child(new_child)

    old_node.srcpos = _extend_pos(old_node.srcpos, new_node.srcpos)
    return old_node


def get_property_by_label(tree: Node, label: str) -> Optional[tuple[Property, Node]]:
    """Find the property carrying *label*, with the node that holds it."""
    for prop in tree.live_properties:
        if any(lab.label == label for lab in _live(prop.labels)):
            return prop, tree
    for child in tree.live_children:
        found = get_property_by_label(child, label)
        if found is not None:
            return found
    return None


def get_marker_label(
    tree: Node, label: str
) -> Optional[tuple[Marker, Node, Property]]:
    """Find the in-value label marker *label*, with its node and property."""
    for prop in tree.live_properties:
        for marker in prop.val.markers_of_type(MarkerType.LABEL):
            if marker.ref == label:
                return marker, tree, prop
    for child in tree.live_children:
        found = get_marker_label(child, label)
        if found is not None:
            return found
    return None


def get_node_by_path(tree: Node, path: Optional[str]) -> Optional[Node]:
    """Find a node by a path relative to *tree*."""
    if not path:
        return None if tree.deleted else tree
    path = path.lstrip("/")
    head, slash, rest = path.partition("/")
    for child in tree.live_children:
        if slash and head == child.name:
            return get_node_by_path(child, rest)
        if not slash and path == child.name:
            return child
    return None


def get_node_by_label(tree: Node, label: str) -> Optional[Node]:
    """Find the node carrying *label*."""
    if not label:
        raise ValueError("label must not be empty")
    if any(lab.label == label for lab in _live(tree.labels)):
        return tree
    for child in tree.live_children:
        node = get_node_by_label(child, label)
        if node is not None:
            return node
    return None


def get_node_by_phandle(tree: Node, phandle: int) -> Optional[Node]:
    """Find the node with the given phandle."""
    if not phandle_is_valid(phandle):
        return None
    if tree.phandle == phandle:
        return None if tree.deleted else tree
    for child in tree.live_children:
        node = get_node_by_phandle(child, phandle)
        if node is not None:
            return node
    return None


def get_node_by_ref(tree: Node, ref: str) -> Optional[Node]:
    """Resolve a reference: a path, a label, or ``label/relative/path``."""
    if ref == "/":
        return tree
    target: Optional[Node] = tree
    path: Optional[str] = None
    if ref.startswith("/"):
        path = ref
    else:
        label, slash, rest = ref.partition("/")
        if slash:
            path = rest
        target = get_node_by_label(tree, label)
        if target is None:
            return None
    if path is not None:
        target = get_node_by_path(target, path)
    return target


def guess_boot_cpuid(tree: Node) -> int:
    """The ``reg`` of the first node under ``/cpus``, or 0."""
    cpus = get_node_by_path(tree, "/cpus")
    if cpus is None or not cpus.children:
        return 0
    reg = cpus.children[0].get_property("reg")
    if reg is None or len(reg.val) != _CELL_SIZE:
        return 0
    return reg.cell()


def _build_root_node(dt: Node, name: str) -> Node:
    node = dt.get_subnode(name)
    if node is None:
        node = Node(name=name)
        dt.add_child(node)
    return node


def _walk(node: Node) -> Iterator[Node]:
    yield node
    for child in node.live_children:
        yield from _walk(child)


def _phandle_refs(node: Node) -> Iterator[tuple[Property, Marker]]:
    for prop in node.live_properties:
        for marker in prop.val.markers_of_type(MarkerType.REF_PHANDLE):
            yield prop, marker


@dataclass(eq=False)
class DtInfo:
    """A whole device tree: root node, reservations and header data."""

    dt: Node
    reservelist: list[ReserveEntry] = field(default_factory=list)
    dtsflags: int = 0
    boot_cpuid_phys: int = 0
    phandle_format: PhandleFormat = PhandleFormat.EPAPR
    _next_phandle: int = field(default=1, init=False, repr=False)
    _next_fragment: int = field(default=0, init=False, repr=False)

    def add_orphan_node(self, new_node: Node, ref: str) -> Node:
        """Wrap *new_node* in an overlay fragment targeting *ref*."""
        if new_node.name is not None:
            raise ValueError("orphan node is already named")
        data = Data()
        if ref.startswith("/"):
            data.add_marker(MarkerType.TYPE_STRING, ref).append(ref.encode() + b"\0")
            prop = Property("target-path", data)
        else:
            data.add_marker(MarkerType.REF_PHANDLE, ref).append_integer(0xFFFFFFFF, 32)
            prop = Property("target", data)

        new_node.name = "__overlay__"
        fragment = Node(
            name=f"fragment@{self._next_fragment}",
            properties=[prop],
            children=[new_node],
        )
        self._next_fragment += 1
        self.dt.add_child(fragment)
        return self.dt

    def _add_phandle_property(self, node: Node, name: str, fmt: PhandleFormat) -> None:
        if not self.phandle_format & fmt:
            return
        if node.get_property(name) is not None:
            return
        data = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(node.phandle)
        node.add_property(Property(name, data))

    def node_phandle(self, node: Node) -> int:
        """Return the node's phandle, allocating a fresh one if needed."""
        if phandle_is_valid(node.phandle):
            return node.phandle
        while get_node_by_phandle(self.dt, self._next_phandle) is not None:
            self._next_phandle += 1
        node.phandle = self._next_phandle
        self._add_phandle_property(node, "linux,phandle", PhandleFormat.LEGACY)
        self._add_phandle_property(node, "phandle", PhandleFormat.EPAPR)
        return node.phandle

    def sort(self) -> None:
        """Sort reservations by address and size, and the tree by name."""
        self.reservelist.sort(key=lambda r: (r.address, r.size))

        def sort_node(node: Node) -> None:
            node.properties.sort(key=lambda p: p.name)
            node.children.sort(key=lambda c: c.name or "")
            for child in node.children:
                sort_node(child)

        sort_node(self.dt)

    def generate_label_tree(self, name: str, allocph: bool) -> None:
        """Record every node label as a path property in node */name*."""
        if not any(node.labels for node in _walk(self.dt)):
            return
        an = _build_root_node(self.dt, name)
        self._label_tree(an, self.dt, allocph)

    def _label_tree(self, an: Node, node: Node, allocph: bool) -> None:
        if node.labels:
            for lab in _live(node.labels):
                if an.get_property(lab.label) is not None:
                    sys.stderr.write(
                        f"WARNING: label {lab.label} already exists in /{an.name}"
                    )
                    continue
                an.add_property(Property(lab.label, _escaped_string_data(node.fullpath)))
            if allocph:
                self.node_phandle(node)
        for child in node.live_children:
            self._label_tree(an, child, allocph)

    def generate_fixups_tree(self, name: str) -> None:
        """Record unresolved phandle references in node */name*."""
        if not any(
            get_node_by_ref(self.dt, m.ref) is None
            for node in _walk(self.dt)
            for _, m in _phandle_refs(node)
        ):
            return
        fn = _build_root_node(self.dt, name)
        self._fixups_tree(fn, self.dt)

    def _fixups_tree(self, fn: Node, node: Node) -> None:
        for prop, marker in list(_phandle_refs(node)):
            if get_node_by_ref(self.dt, marker.ref) is None:
                if "/" in marker.ref:
                    raise FatalError(
                        f"Can't generate fixup for reference to path &{{{marker.ref}}}"
                    )
                if ":" in node.fullpath or ":" in prop.name:
                    raise FatalError("arguments should not contain ':'")
                entry = f"{node.fullpath}:{prop.name}:{marker.offset}"
                fn.append_to_property(
                    marker.ref, entry.encode() + b"\0", MarkerType.TYPE_STRING
                )
        for child in node.live_children:
            self._fixups_tree(fn, child)

    def generate_local_fixups_tree(self, name: str) -> None:
        """Record resolved phandle references in node */name*."""
        if not any(
            get_node_by_ref(self.dt, m.ref) is not None
            for node in _walk(self.dt)
            for _, m in _phandle_refs(node)
        ):
            return
        lfn = _build_root_node(self.dt, name)
        self._local_fixups_tree(lfn, self.dt)

    def _local_fixups_tree(self, lfn: Node, node: Node) -> None:
        for prop, marker in list(_phandle_refs(node)):
            if get_node_by_ref(self.dt, marker.ref) is not None:
                names: list[str] = []
                walker: Optional[Node] = node
                while walker is not None:
                    names.append(walker.name or "")
                    walker = walker.parent
                names.reverse()
                target = lfn
                for component in names[1:]:
                    sub = target.get_subnode(component)
                    if sub is None:
                        sub = Node(name=component)
                        target.add_child(sub)
                    target = sub
                target.append_to_property(
                    prop.name, struct.pack(">I", marker.offset), MarkerType.TYPE_UINT32
                )
        for child in node.live_children:
            self._local_fixups_tree(lfn, child)