import struct

import pytest

from fdtkit.livetree import (
    Data,
    DtInfo,
    Label,
    MarkerType,
    Node,
    PhandleFormat,
    Property,
    ReserveEntry,
    add_label,
    delete_labels,
    get_marker_label,
    get_node_by_label,
    get_node_by_path,
    get_node_by_phandle,
    get_node_by_ref,
    get_property_by_label,
    guess_boot_cpuid,
    merge_nodes,
)
from fdtkit.util import FatalError


def make_tree():
    root = Node(name="")
    a = Node(name="a@1")
    b = Node(name="b")
    c = Node(name="c")
    root.add_child(a)
    root.add_child(b)
    b.add_child(c)
    return root, a, b, c


def test_add_label_prepends_and_revives():
    labels = []
    add_label(labels, "one")
    add_label(labels, "two")
    assert [lab.label for lab in labels] == ["two", "one"]
    delete_labels(labels)
    assert all(lab.deleted for lab in labels)
    add_label(labels, "one")
    assert len(labels) == 2
    assert [lab.deleted for lab in labels] == [True, False]


def test_data_append_integer_and_markers():
    d = Data().add_marker(MarkerType.TYPE_UINT16).append_integer(0x1234, 16)
    d.add_marker(MarkerType.REF_PHANDLE, "x").append_cell(0xDEADBEEF)
    assert d.val == b"\x12\x34" + struct.pack(">I", 0xDEADBEEF)
    refs = list(d.markers_of_type(MarkerType.REF_PHANDLE))
    assert [(m.offset, m.ref) for m in refs] == [(2, "x")]
    with pytest.raises(ValueError):
        Data().append_integer(1, 12)


def test_marker_type_is_type():
    d = Data().add_marker(MarkerType.TYPE_STRING).add_marker(MarkerType.LABEL, "l")
    assert [m.type.is_type for m in d.markers] == [True, False]


def test_property_cells():
    prop = Property("reg", Data().append_cell(0xDEADBEEF))
    assert prop.cell() == 0xDEADBEEF
    assert prop.cell_at(0) == 0xDEADBEEF
    with pytest.raises(IndexError):
        prop.cell_at(1)
    two = Property("reg", Data().append_cell(1).append_cell(123456789))
    assert two.cell_at(1) == 123456789
    with pytest.raises(ValueError):
        two.cell()


def test_unit_name_and_fullpath():
    root, a, b, c = make_tree()
    assert a.unit_name() == "1"
    assert b.unit_name() == ""
    assert root.fullpath == "/"
    assert c.fullpath == "/b/c"


def test_get_node_by_path():
    root, a, b, c = make_tree()
    assert get_node_by_path(root, "/b/c") is c
    assert get_node_by_path(root, "/a@1") is a
    assert get_node_by_path(root, "") is root
    assert get_node_by_path(root, "/missing") is None
    root.deleted = True
    assert get_node_by_path(root, "") is None


def test_get_node_by_label_and_ref():
    root, a, b, c = make_tree()
    add_label(b.labels, "lb")
    assert get_node_by_label(root, "lb") is b
    assert get_node_by_ref(root, "lb") is b
    assert get_node_by_ref(root, "lb/c") is c
    assert get_node_by_ref(root, "/") is root
    assert get_node_by_ref(root, "/b/c") is c
    assert get_node_by_ref(root, "nolabel") is None
    with pytest.raises(ValueError):
        get_node_by_label(root, "")


def test_get_node_by_phandle():
    root, a, b, c = make_tree()
    c.phandle = 0x2000
    assert get_node_by_phandle(root, 0x2000) is c
    assert get_node_by_phandle(root, 0) is None
    assert get_node_by_phandle(root, 0xFFFFFFFF) is None
    c.deleted = True
    assert get_node_by_phandle(root, 0x2000) is None


def test_property_and_marker_labels():
    root, a, b, c = make_tree()
    prop = Property("p", Data().append_cell(1).add_marker(MarkerType.LABEL, "mid"))
    add_label(prop.labels, "plab")
    c.add_property(prop)
    assert get_property_by_label(root, "plab") == (prop, c)
    assert get_property_by_label(root, "nope") is None
    marker, node, found = get_marker_label(root, "mid")
    assert (marker.offset, node, found) == (4, c, prop)
    assert get_marker_label(root, "nope") is None


def test_delete_node_hides_subtree():
    root, a, b, c = make_tree()
    c.add_property(Property("x"))
    add_label(b.labels, "lb")
    root.delete_node_by_name("b")
    assert b.deleted and c.deleted
    assert c.properties[0].deleted
    assert root.get_subnode("b") is None
    assert get_node_by_label(root, "lb") is None


def test_delete_property_by_name():
    node = Node(name="n")
    node.add_property(Property("x"))
    node.delete_property_by_name("x")
    assert node.get_property("x") is None
    assert node.properties[0].deleted


def test_merge_nodes():
    root, a, b, c = make_tree()
    root.add_property(Property("keep", Data().append_cell(1)))
    root.add_property(Property("over", Data().append_cell(1)))
    root.add_property(Property("gone", Data().append_cell(1)))

    new = Node(
        name="",
        properties=[
            Property("over", Data().append_cell(2)),
            Property("gone", deleted=True),
            Property("added", Data().append_cell(3)),
        ],
        children=[
            Node(name="b", children=[Node(name="d")]),
            Node(name="a@1", deleted=True),
            Node(name="e"),
        ],
    )
    add_label(new.labels, "rootlab")
    merged = merge_nodes(root, new)

    assert merged is root
    assert root.get_property("over").cell() == 2
    assert root.get_property("keep").cell() == 1
    assert root.get_property("gone") is None
    assert root.get_property("added").cell() == 3
    assert a.deleted
    assert get_node_by_path(root, "/b/d").parent is b
    assert get_node_by_path(root, "/b/c") is c
    assert root.get_subnode("e").parent is root
    assert [lab.label for lab in root.labels] == ["rootlab"]


def test_append_to_property():
    node = Node(name="n")
    node.append_to_property("p", b"ab", MarkerType.TYPE_STRING)
    node.append_to_property("p", b"cd", MarkerType.TYPE_STRING)
    prop = node.get_property("p")
    assert prop.val.val == b"abcd"
    assert [(m.offset, m.ref) for m in prop.val.markers] == [(0, "p"), (2, "p")]


def test_node_phandle_allocation():
    root, a, b, c = make_tree()
    a.phandle = 1
    dti = DtInfo(dt=root)
    ph = dti.node_phandle(c)
    assert phandle_ok(ph)
    assert ph != a.phandle
    assert c.get_property("phandle").cell() == ph
    assert c.get_property("linux,phandle") is None
    assert dti.node_phandle(c) == ph
    assert dti.node_phandle(a) == 1


def phandle_ok(ph):
    return ph not in (0, 0xFFFFFFFF)


def test_node_phandle_both_formats():
    root, a, b, c = make_tree()
    dti = DtInfo(dt=root, phandle_format=PhandleFormat.BOTH)
    ph = dti.node_phandle(b)
    assert ph == 1
    assert b.get_property("phandle").cell() == ph
    assert b.get_property("linux,phandle").cell() == ph


def test_sort():
    root = Node(name="")
    for name in ("z", "a", "m"):
        root.add_property(Property(name))
        root.add_child(Node(name=name))
    dti = DtInfo(
        dt=root,
        reservelist=[ReserveEntry(5, 2), ReserveEntry(1, 9), ReserveEntry(5, 1)],
    )
    dti.sort()
    assert [p.name for p in root.properties] == ["a", "m", "z"]
    assert [c.name for c in root.children] == ["a", "m", "z"]
    assert [(r.address, r.size) for r in dti.reservelist] == [(1, 9), (5, 1), (5, 2)]


def test_add_orphan_node():
    root = Node(name="")
    dti = DtInfo(dt=root)
    dti.add_orphan_node(Node(), "/x")
    dti.add_orphan_node(Node(), "lbl")

    frag0 = root.get_subnode("fragment@0")
    frag1 = root.get_subnode("fragment@1")
    assert frag0.get_property("target-path").val.val == b"/x\0"
    assert frag0.get_subnode("__overlay__").parent is frag0
    target = frag1.get_property("target")
    assert target.cell() == 0xFFFFFFFF
    assert [(m.type, m.ref) for m in target.val.markers] == [
        (MarkerType.REF_PHANDLE, "lbl")
    ]
    with pytest.raises(ValueError):
        dti.add_orphan_node(Node(name="named"), "/x")


def test_generate_label_tree():
    root, a, b, c = make_tree()
    add_label(c.labels, "lc")
    dti = DtInfo(dt=root)
    dti.generate_label_tree("__symbols__", True)
    symbols = root.get_subnode("__symbols__")
    assert symbols.get_property("lc").val.val == b"/b/c\0"
    assert phandle_ok(c.phandle)
    assert c.get_property("phandle").cell() == c.phandle


def test_generate_label_tree_without_labels():
    root, a, b, c = make_tree()
    DtInfo(dt=root).generate_label_tree("__symbols__", False)
    assert root.get_subnode("__symbols__") is None


def test_generate_fixups_tree():
    root, a, b, c = make_tree()
    data = Data().add_marker(MarkerType.TYPE_UINT32)
    data.add_marker(MarkerType.REF_PHANDLE, "missing").append_cell(0xFFFFFFFF)
    b.add_property(Property("p", data))
    DtInfo(dt=root).generate_fixups_tree("__fixups__")
    fixups = root.get_subnode("__fixups__")
    assert fixups.get_property("missing").val.val == b"/b:p:0\0"


def test_generate_fixups_tree_rejects_path_reference():
    root, a, b, c = make_tree()
    data = Data().add_marker(MarkerType.REF_PHANDLE, "/nowhere").append_cell(0)
    b.add_property(Property("p", data))
    with pytest.raises(FatalError):
        DtInfo(dt=root).generate_fixups_tree("__fixups__")


def test_generate_local_fixups_tree():
    root, a, b, c = make_tree()
    add_label(a.labels, "tgt")
    data = Data().append_cell(7)
    data.add_marker(MarkerType.REF_PHANDLE, "tgt").append_cell(0)
    c.add_property(Property("p", data))
    DtInfo(dt=root).generate_local_fixups_tree("__local_fixups__")
    lfn = root.get_subnode("__local_fixups__")
    entry = get_node_by_path(lfn, "b/c").get_property("p")
    assert entry.val.val == struct.pack(">I", 4)


def test_guess_boot_cpuid():
    root = Node(name="")
    assert guess_boot_cpuid(root) == 0
    cpus = Node(name="cpus")
    root.add_child(cpus)
    assert guess_boot_cpuid(root) == 0
    cpu = Node(name="cpu@0")
    cpus.add_child(cpu)
    assert guess_boot_cpuid(root) == 0
    cpu.add_property(Property("reg", Data().append_cell(123456789)))
    assert guess_boot_cpuid(root) == 123456789


def test_label_dataclass_defaults():
    lab = Label("x")
    labels = [lab]
    delete_labels(labels)
    assert lab.deleted is True