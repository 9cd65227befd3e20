# fdtkit

Building blocks for working with device trees in Python.

- `fdtkit.util`: small helpers. `escape_path` and `join_path` for paths,
  `get_escape_char` for decoding backslash escapes, `is_printable_string`,
  `decode_type` for type formats such as `"hx"` or `"bu"`, `read_fdt` and
  `write_fdt` for blob files (`"-"` means stdin or stdout),
  `format_property_data` for readable property values, and `format_usage`
  with `LongOption` for command usage text. Fatal conditions raise
  `FatalError`.
- `fdtkit.srcpos`: `SourcePosition` spans (with `describe`, `string_first`,
  `string_last` and `error_message`) and `SourceTracker`, which keeps the
  stack of open source files and the include search path.
- `fdtkit.livetree`: an in-memory tree made of `Node`, `Property`, `Data`,
  `Marker` and `Label`, held in a `DtInfo` with its `ReserveEntry` list.
  It supports merging (`merge_nodes`), lookup by path, label, phandle or
  reference (`get_node_by_path`, `get_node_by_label`, `get_node_by_phandle`,
  `get_node_by_ref`), phandle allocation (`DtInfo.node_phandle`), sorting
  (`DtInfo.sort`), overlay fragments (`DtInfo.add_orphan_node`) and
  generation of symbol and fixup nodes (`DtInfo.generate_label_tree`,
  `DtInfo.generate_fixups_tree`, `DtInfo.generate_local_fixups_tree`).
- `fdtkit.treesource`: `dt_to_source(dti, stream, annotate)` writes a tree
  as device tree source text; a non-zero `annotate` adds source-position
  comments.
- `fdtkit.yamltree`: `dt_to_yaml(dti, stream)` writes a tree as YAML.

## Installation

```
pip install .
```

## Example: building a tree and writing it out

```python
import io

from fdtkit.livetree import Data, DtInfo, MarkerType, Node, Property
from fdtkit.treesource import dt_to_source
from fdtkit.yamltree import dt_to_yaml

root = Node(name="")
model = Data().add_marker(MarkerType.TYPE_STRING).append(b"board\0")
root.add_property(Property("model", model))
reg = Data().add_marker(MarkerType.TYPE_UINT32).append_cell(0x1000)
root.add_property(Property("reg", reg))
dti = DtInfo(dt=root)

out = io.StringIO()
dt_to_source(dti, out, 0)
print(out.getvalue())

out = io.StringIO()
dt_to_yaml(dti, out)
print(out.getvalue())
```

## Example: helpers

```python
from fdtkit.util import decode_type, format_property_data

decode_type("hx")                      # ("x", 2)
format_property_data(b"hello\0")       # ' = "hello"'
```

## What this package does not do

- It does not parse device tree source text; trees are built in code with
  the `fdtkit.livetree` classes.
- It does not produce or read the flattened binary form of a tree; `read_fdt`
  and `write_fdt` only move bytes to and from files.
- It has no command-line tool.

## Tests

```
pip install .[test]
pytest
```