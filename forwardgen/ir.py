"""Graph IR for forward-pass code generation.

Sequence-centric design: the graph is an ordered list of nodes and the
order in which nodes are added is the order in which the generated code
evaluates them. Edges are implicit in each node's input list. A node may
produce several outputs, and a later node may re-define a name an earlier
node produced (the generated code simply rebinds the variable).

Inputs and constants (weights) are tensors without producer nodes, not
virtual nodes. Constants become module buffers in the generated code;
inputs become arguments of the forward function.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

import numpy as np


class OpType(Enum):
    """Operator types the code generator knows how to emit.

    Values use range-based numbering so related ops cluster together:
      10–19  Element-wise unary
      20–29  Element-wise binary
      30–39  Reductions
      40–49  MatMul / linear
      50–59  Shape / data movement
      60–69  Normalization
    """
    # --- Element-wise unary (10–19) ---
    RELU = 10
    EXP  = 11
    TANH = 12
    POW  = 13            # attrs["scalar"]
    GELU = 14
    NEG  = 15

    # --- Element-wise binary (20–29) ---
    ADD = 20
    SUB = 21
    MUL = 22
    DIV = 23

    # --- Reductions (30–39) ---
    MAX     = 30         # attrs["axis", "keepdim"]
    SUM     = 31         # attrs["axis", "keepdim"]
    SOFTMAX = 32         # attrs["axis"]

    # --- MatMul / linear (40–49) ---
    MATMUL = 40
    LINEAR = 41          # inputs: [x, weight, bias]

    # --- Shape / data movement (50–59) ---
    RESHAPE   = 50       # attrs["shape"]
    TRANSPOSE = 51       # attrs["dim0", "dim1"]
    CAT       = 52       # attrs["dim"]
    SPLIT     = 53       # attrs["sizes", "dim"], one output per size

    # --- Normalization (60–69) ---
    LAYERNORM = 60       # attrs["eps"], inputs: [x, weight, bias]


@dataclass
class TensorInfo:
    """Metadata for a named tensor in the graph.

    The name is the raw graph name (it may contain `/`, `:` or `.`); the
    generated code uses its sanitized form. For constants, `buffer` holds
    the weight data.
    """
    name: str
    shape: tuple[int, ...]
    dtype: str = "float32"

    # Weight data for constants; None for inputs and intermediates
    buffer: np.ndarray | None = None


@dataclass
class Node:
    """A single operation in the sequence.

    `inputs` may repeat a name (ADD(x, x)) and `outputs` lists every value
    the node binds, in slot order.
    """
    id: int
    op: OpType
    inputs: list[str]       # Names of tensors this node reads
    outputs: list[str]      # Names of tensors this node (re-)binds

    # Op-specific configuration (e.g., reduction axis, reshape target)
    attrs: dict[str, Any] = field(default_factory=dict)

    @property
    def output(self) -> str:
        """First output name. Most ops have exactly one."""
        return self.outputs[0]


class Graph:
    """An ordered computation graph: nodes, tensor metadata, and roles.

    Nodes are stored in sequence order; a node's index in that sequence is
    its position for lifetime analysis. Tensors are stored by raw name.
    """

    def __init__(self, name: str = "graph") -> None:
        self.name = name
        self.nodes: list[Node] = []
        self.tensors: dict[str, TensorInfo] = {}

        # Tensor roles — ordered lists of tensor names
        self.inputs: list[str] = []     # Arguments of the generated forward()
        self.outputs: list[str] = []    # Returned by the generated forward()
        self.constants: list[str] = []  # Weights, become module buffers

        # Connectivity indices (maintained by add_node)
        self._producers: dict[str, list[int]] = {}  # tensor name -> producing node IDs, in order
        self._consumers: dict[str, list[int]] = {}  # tensor name -> consuming node IDs, in order
        self._index: dict[int, int] = {}            # node ID -> sequence index

        self._next_id: int = 0

    # --- Builder methods ---

    def add_tensor(self, name: str, shape: tuple[int, ...], dtype: str = "float32") -> TensorInfo:
        """Register a tensor in the graph. Returns the created TensorInfo."""
        if name in self.tensors:
            raise ValueError(f"Duplicate tensor name: {name}")
        info = TensorInfo(name=name, shape=tuple(shape), dtype=dtype)
        self.tensors[name] = info
        self._consumers[name] = []
        return info

    def add_input(self, name: str, shape: tuple[int, ...], dtype: str = "float32") -> TensorInfo:
        """Register a tensor and mark it as a forward() argument."""
        info = self.add_tensor(name, shape, dtype)
        self.inputs.append(name)
        return info

    def add_constant(self, name: str, data: np.ndarray) -> TensorInfo:
        """Register a weight tensor backed by `data`."""
        data = np.asarray(data)
        info = self.add_tensor(name, data.shape, str(data.dtype))
        info.buffer = data
        self.constants.append(name)
        return info

    def add_node(self, op: OpType, inputs: list[str], outputs: str | list[str],
                 attrs: dict[str, Any] | None = None) -> Node:
        """Append a compute node. Input and output tensors must already be registered.

        Numpy scalars in attrs are stored as plain Python numbers, so a graph
        evaluates the same whether it was built in code or loaded from JSON.

        Returns the created Node with an auto-assigned ID.
        """
        if isinstance(outputs, str):
            outputs = [outputs]
        if not outputs:
            raise ValueError(f"{op.name} node needs at least one output")
        for inp in inputs:
            if inp not in self.tensors:
                raise ValueError(f"Input tensor '{inp}' not registered")
        for out in outputs:
            if out not in self.tensors:
                raise ValueError(f"Output tensor '{out}' not registered")

        node_id = self._next_id
        self._next_id += 1

        node = Node(
            id=node_id,
            op=op,
            inputs=list(inputs),
            outputs=list(outputs),
            attrs=_plain_attrs(attrs or {}),
        )
        self._index[node_id] = len(self.nodes)
        self.nodes.append(node)

        # Update connectivity indices
        for out in dict.fromkeys(outputs):
            self._producers.setdefault(out, []).append(node_id)
        for inp in inputs:
            self._consumers[inp].append(node_id)

        return node

    # --- Connectivity lookups ---

    def node(self, node_id: int) -> Node:
        return self.nodes[self._index[node_id]]

    def index_of(self, node_id: int) -> int:
        """Sequence index of a node."""
        return self._index[node_id]

    def producers(self, tensor_name: str) -> list[Node]:
        """All nodes that (re-)bind this tensor, in sequence order."""
        return [self.node(nid) for nid in self._producers.get(tensor_name, [])]

    def consumers(self, tensor_name: str) -> list[Node]:
        """All nodes that read this tensor, in sequence order (one entry per node)."""
        return [self.node(nid) for nid in dict.fromkeys(self._consumers.get(tensor_name, []))]

    def __iter__(self) -> Iterator[Node]:
        """Iterate over nodes in sequence order."""
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    # --- Summary ---

    def summary(self) -> str:
        """Human-readable summary of the graph structure."""
        n_nodes = len(self.nodes)
        n_tensors = len(self.tensors)
        header = (f"Graph '{self.name}': {n_nodes} nodes, {n_tensors} tensors "
                  f"({len(self.inputs)} inputs, {len(self.constants)} constants, "
                  f"{len(self.outputs)} outputs)")

        op_counts = Counter(node.op.name for node in self.nodes)
        ops_str = ", ".join(f"{name}: {cnt}" for name, cnt in op_counts.most_common())

        def _tensor_desc(name: str) -> str:
            t = self.tensors[name]
            shape_str = "x".join(str(d) for d in t.shape)
            return f"{name} [{shape_str}] {t.dtype}"

        inputs_str = ", ".join(_tensor_desc(n) for n in self.inputs)
        outputs_str = ", ".join(_tensor_desc(n) for n in self.outputs)

        lines = [header, f"  Ops:     {ops_str}"]
        if self.inputs:
            lines.append(f"  Inputs:  {inputs_str}")
        if self.outputs:
            lines.append(f"  Outputs: {outputs_str}")
        return "\n".join(lines)

    def dump(self) -> str:
        """Full node-by-node listing in sequence order."""
        lines = [self.summary(), ""]
        for i, node in enumerate(self.nodes):
            inputs_str = ", ".join(node.inputs)
            outputs_str = ", ".join(node.outputs)
            attrs_str = ""
            if node.attrs:
                parts = [f"{k}={v}" for k, v in node.attrs.items()]
                attrs_str = "  " + ", ".join(parts)
            lines.append(
                f"  [{i:>3}] {node.op.name:<10} "
                f"{inputs_str} -> {outputs_str}{attrs_str}"
            )
        return "\n".join(lines)

    # --- Serialization ---

    def to_dict(self) -> dict:
        """Serialize graph structure to a plain dict (no weight data)."""
        nodes = []
        for node in self.nodes:
            nodes.append({
                "id": node.id,
                "op": node.op.name,
                "inputs": node.inputs,
                "outputs": node.outputs,
                "attrs": node.attrs,
            })

        tensors = {}
        for name, info in self.tensors.items():
            tensors[name] = {
                "shape": list(info.shape),
                "dtype": info.dtype,
            }

        return {
            "name": self.name,
            "nodes": nodes,
            "tensors": tensors,
            "inputs": self.inputs,
            "constants": self.constants,
            "outputs": self.outputs,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Graph":
        """Reconstruct a Graph from a dict (no weight data).

        Constants will have shape/dtype metadata but buffer=None.
        """
        graph = cls(d.get("name", "graph"))

        for name, info in d["tensors"].items():
            graph.add_tensor(name, tuple(info["shape"]), info["dtype"])

        graph.inputs = list(d["inputs"])
        graph.constants = list(d["constants"])
        graph.outputs = list(d["outputs"])

        for node_d in d["nodes"]:
            op = OpType[node_d["op"]]
            graph.add_node(op, node_d["inputs"], node_d["outputs"],
                           node_d.get("attrs"))

        return graph

    def save(self, path: str | Path, storage_dtype: str | None = None) -> None:
        """Save graph to disk: {path}.json (topology) + {path}.weights (data).

        Weights are written in `storage_dtype` (e.g. "float16" to halve the
        file) and converted back to each tensor's own dtype on load. With
        storage_dtype=None every constant is stored in its own dtype. Only
        floating-point constants are converted; integer and bool weights
        keep their dtype.

        Args:
            path: Stem/prefix — writes {path}.json and {path}.weights.
            storage_dtype: Element type used in the weights file.
        """
        path = Path(path)

        def _default(obj):
            if isinstance(obj, np.integer):
                return int(obj)
            if isinstance(obj, np.floating):
                return float(obj)
            if isinstance(obj, tuple):
                return list(obj)
            raise TypeError(f"Not JSON serializable: {type(obj)}")

        d = self.to_dict()

        # Pack weight buffers into a flat binary blob
        weight_manifest: dict[str, dict] = {}
        weight_blobs: list[bytes] = []
        offset = 0
        for name in self.constants:
            info = self.tensors[name]
            if info.buffer is None:
                continue
            buf = np.ascontiguousarray(info.buffer)
            stored = _storage_dtype(buf.dtype, storage_dtype)
            raw = buf.astype(stored).tobytes()
            weight_manifest[name] = {"offset": offset, "size": len(raw),
                                     "dtype": stored.name}
            weight_blobs.append(raw)
            offset += len(raw)

        d["weights"] = weight_manifest

        with open(_sibling(path, ".json"), "w") as f:
            json.dump(d, f, indent=2, default=_default)

        if weight_blobs:
            with open(_sibling(path, ".weights"), "wb") as f:
                for blob in weight_blobs:
                    f.write(blob)

    @classmethod
    def load(cls, path: str | Path) -> "Graph":
        """Load graph from disk: {path}.json + optional {path}.weights.

        If the weights file exists, constant buffers are populated and cast
        from their storage dtype to the tensor's runtime dtype. Otherwise
        constants have buffer=None (the graph can still generate code, but
        build_module() has nothing to load).

        Args:
            path: Stem/prefix — reads {path}.json and {path}.weights.
        """
        path = Path(path)

        with open(_sibling(path, ".json")) as f:
            d = json.load(f)

        graph = cls.from_dict(d)

        weights_path = _sibling(path, ".weights")
        weight_manifest = d.get("weights", {})
        if weights_path.exists() and weight_manifest:
            raw = weights_path.read_bytes()
            for name, entry in weight_manifest.items():
                info = graph.tensors.get(name)
                if info is None:
                    continue
                stored = np.dtype(entry.get("dtype", info.dtype))
                count = entry["size"] // stored.itemsize
                data = np.frombuffer(raw, dtype=stored, offset=entry["offset"],
                                     count=count)
                info.buffer = data.reshape(info.shape).astype(np.dtype(info.dtype))

        return graph


def _storage_dtype(runtime: np.dtype, storage: str | None) -> np.dtype:
    """Pick the element type a weight is written with."""
    if storage is None or not np.issubdtype(runtime, np.floating):
        return runtime
    stored = np.dtype(storage)
    if not np.issubdtype(stored, np.floating):
        raise ValueError(f"Storage dtype must be floating point, got '{storage}'")
    return stored


def _sibling(path: Path, suffix: str) -> Path:
    """{path}{suffix}, keeping any dots already in the stem (`model.v1`)."""
    return path.with_name(path.name + suffix)


def _plain_attrs(attrs: dict[str, Any]) -> dict[str, Any]:
    """Copy of attrs with numpy scalars (also inside lists/tuples) as Python scalars."""
    def plain(value):
        if isinstance(value, np.generic):
            return value.item()
        if isinstance(value, (list, tuple)):
            return type(value)(plain(v) for v in value)
        return value
    return {key: plain(value) for key, value in attrs.items()}
