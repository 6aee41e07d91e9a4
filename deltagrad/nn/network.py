# ╔══════════════════════════════════════════════════════════════════════╗
# ║  Deltagrad — Neural Network Training Engine                          ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""nn.network — directed acyclic graphs of layers.

A :class:`DAGNetwork` is built from input nodes and inner nodes, each
inner node wrapping one :class:`Layer` and its upstream nodes.  Every
evaluation pass gets a fresh :class:`GraphEvaluationContext` that caches
one :class:`Result` per node, so a node shared by several downstream
nodes (a diamond) is evaluated once and its Result is shared.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import TYPE_CHECKING, Iterable, Mapping, Sequence

from ..autograd import Result
from ..cuda.memory import current_device
from ..errors import GraphConfigurationError
from ..pool import run_all
from .capabilities import DeviceResident, supports
from .layer import Layer

if TYPE_CHECKING:
    from ..cuda.cache import CacheScope, DeviceBufferCache

logger = logging.getLogger(__name__)


# ──────────────────────── Nodes ───────────────────────────────────────

class Node:
    """A vertex of a :class:`DAGNetwork`."""
    __slots__ = ('id', 'network', 'label')

    def __init__(self, network: 'DAGNetwork', label: str | None = None):
        self.id = str(uuid.uuid4())
        self.network = network
        self.label = label

    def evaluate(self, ctx: 'GraphEvaluationContext') -> Result:
        raise NotImplementedError


class InputNode(Node):
    __slots__ = ('index',)

    def __init__(self, network: 'DAGNetwork', index: int):
        super().__init__(network, f'input{index}')
        self.index = index

    def evaluate(self, ctx):
        return ctx.inputs[self.index]

    def __repr__(self) -> str:
        return f"InputNode({self.index})"


class InnerNode(Node):
    """Wraps a layer and the nodes feeding it.

    With ``parallel`` set, multiple inputs are evaluated concurrently on
    the shared worker pool.
    """
    __slots__ = ('layer', 'inputs', 'parallel')

    def __init__(self, network: 'DAGNetwork', layer: Layer,
                 inputs: Sequence[Node], label: str | None = None,
                 parallel: bool = True):
        super().__init__(network, label)
        self.layer = layer
        self.inputs = tuple(inputs)
        self.parallel = parallel

    def evaluate(self, ctx):
        if self.parallel and len(self.inputs) > 1:
            results = run_all([lambda n=n: ctx.get(n) for n in self.inputs])
        else:
            results = [ctx.get(n) for n in self.inputs]
        logger.debug("eval %s", self.label or self.layer.name)
        return self.layer.eval(*results, ctx=ctx)

    def __repr__(self) -> str:
        label = f", label={self.label!r}" if self.label else ''
        return f"InnerNode({self.layer!r}{label})"


# ──────────────────────── Evaluation context ──────────────────────────

class GraphEvaluationContext:
    """Per-pass memo of node results.

    Each node is evaluated at most once per context, also when several
    threads ask for it at the same time.  An attached device cache and
    device are visible to every layer evaluated in this pass, together
    with the cache scope that tracks the buffers the pass uploads.  The
    scope travels with the context, so lookups made on pool workers are
    tracked too.
    """

    def __init__(self, inputs: Sequence[Result] = (),
                 cache: 'DeviceBufferCache | None' = None,
                 device=None, scope: 'CacheScope | None' = None):
        self.inputs = tuple(inputs)
        self.cache = cache
        self.device = device
        self.scope = scope
        self._results: dict[str, Result] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()
        self.evaluations = 0

    def _lock_for(self, node_id: str) -> threading.Lock:
        with self._lock:
            lock = self._locks.get(node_id)
            if lock is None:
                lock = self._locks[node_id] = threading.Lock()
            return lock

    def get(self, node: Node) -> Result:
        result = self._results.get(node.id)
        if result is not None:
            return result
        with self._lock_for(node.id):
            result = self._results.get(node.id)
            if result is None:
                result = node.evaluate(self)
                self._results[node.id] = result
                if isinstance(node, InnerNode):
                    with self._lock:
                        self.evaluations += 1
        return result

    def device_for(self, layer: Layer):
        """Device *layer* should compute on in this pass, or None for host.

        Only :class:`DeviceResident` layers are placed on the device.
        """
        if self.cache is None or self.device is None:
            return None
        return self.device if supports(layer, DeviceResident) else None

    def __contains__(self, node: Node) -> bool:
        return node.id in self._results

    def child(self, inputs: Sequence[Result]) -> 'GraphEvaluationContext':
        """Context for a nested network, sharing the device settings."""
        return GraphEvaluationContext(inputs, self.cache, self.device, self.scope)


# ──────────────────────── Networks ────────────────────────────────────

class DAGNetwork(Layer):
    """A layer composed of other layers wired as a DAG.

    Nodes are added in an order where every input already exists, so the
    graph cannot contain a cycle.  The head (the node whose Result the
    network returns) defaults to the most recently added node.
    """

    def __init__(self, inputs: int = 1, name: str | None = None):
        super().__init__(name)
        if inputs < 1:
            raise GraphConfigurationError("A network needs at least one input")
        self.arity = inputs
        self._inputs = [InputNode(self, i) for i in range(inputs)]
        self._nodes: dict[str, InnerNode] = {}
        self._labels: dict[str, InnerNode] = {}
        self._head: Node | None = None

    # ---- Construction ----

    def input(self, index: int = 0) -> InputNode:
        if not 0 <= index < len(self._inputs):
            raise GraphConfigurationError(
                f"{self.name} has {len(self._inputs)} input(s), no input {index}")
        return self._inputs[index]

    def add(self, layer: Layer, *inputs: Node, label: str | None = None,
            parallel: bool = True) -> InnerNode:
        """Wire *layer* to *inputs* (default: the current head)."""
        if not isinstance(layer, Layer):
            raise GraphConfigurationError(
                f"Expected a Layer, got {type(layer).__name__}")
        if not inputs:
            inputs = (self._head if self._head is not None else self._inputs[0],)
        for node in inputs:
            if not isinstance(node, Node) or node.network is not self:
                raise GraphConfigurationError(
                    f"{node!r} is linked to but not defined in {self.name}")
        layer.check_arity(len(inputs))
        if label is not None and label in self._labels:
            raise GraphConfigurationError(f"Duplicate node label {label!r}")
        node = InnerNode(self, layer, inputs, label, parallel)
        self._nodes[node.id] = node
        if label is not None:
            self._labels[label] = node
        self._head = node
        return node

    @classmethod
    def from_links(cls, num_inputs: int, layers: Mapping[str, Layer],
                   links: Mapping[str, Sequence[str | int]], head: str,
                   name: str | None = None) -> 'DAGNetwork':
        """Build from named layers and their input names.

        An ``int`` in a link list refers to a network input.  Dangling
        references and cycles are reported here, before any evaluation.
        """
        for target, refs in links.items():
            if target not in layers:
                raise GraphConfigurationError(
                    f"{target} is linked to but not defined")
            for ref in refs:
                if isinstance(ref, int):
                    if not 0 <= ref < num_inputs:
                        raise GraphConfigurationError(
                            f"input {ref} is linked to but not defined")
                elif ref not in layers:
                    raise GraphConfigurationError(
                        f"{ref} is linked to but not defined")
        if head not in layers:
            raise GraphConfigurationError(f"{head} is linked to but not defined")

        net = cls(num_inputs, name)
        pending = {k: [r for r in links.get(k, ()) if not isinstance(r, int)]
                   for k in layers}
        added: dict[str, InnerNode] = {}
        while pending:
            ready = [k for k, deps in pending.items()
                     if all(d in added for d in deps)]
            if not ready:
                raise GraphConfigurationError(
                    f"Cycle among nodes {sorted(pending)}")
            for k in ready:
                refs = links.get(k) or (0,)
                nodes = [net.input(r) if isinstance(r, int) else added[r]
                         for r in refs]
                added[k] = net.add(layers[k], *nodes, label=k)
                del pending[k]
        net.head = added[head]
        return net

    # ---- Head ----

    @property
    def head(self) -> Node | None:
        return self._head

    @head.setter
    def head(self, node: Node):
        if not isinstance(node, Node) or node.network is not self:
            raise GraphConfigurationError(
                f"{node!r} is linked to but not defined in {self.name}")
        self._head = node

    # ---- Evaluation ----

    def eval(self, *inputs: Result, ctx: GraphEvaluationContext | None = None) -> Result:
        if len(inputs) != len(self._inputs):
            raise GraphConfigurationError(
                f"{self.name} takes {len(self._inputs)} input(s), got {len(inputs)}")
        if self._head is None:
            raise GraphConfigurationError(f"{self.name} has no nodes")
        context = (ctx.child(inputs) if ctx is not None
                   else GraphEvaluationContext(inputs))
        return context.get(self._head)

    def evaluate(self, *inputs, cache: 'DeviceBufferCache | None' = None,
                 device=None) -> Result:
        """Evaluate with an optional device cache attached to the pass.

        Device copies made during the pass are released when it returns;
        *device* defaults to the calling thread's current device.
        """
        if cache is None:
            return self(*inputs)
        if device is None:
            device = current_device()
        with cache.scope() as scope:
            return self(*inputs, ctx=GraphEvaluationContext((), cache, device,
                                                            scope))

    # ---- Introspection ----

    def nodes(self) -> list[InnerNode]:
        return list(self._nodes.values())

    def layers(self) -> list[Layer]:
        return [n.layer for n in self._nodes.values()]

    def children(self) -> list[Layer]:
        seen: set[str] = set()
        out = []
        for layer in self.layers():
            if layer.id not in seen:
                seen.add(layer.id)
                out.append(layer)
        return out

    def by_label(self, label: str) -> InnerNode:
        try:
            return self._labels[label]
        except KeyError:
            raise KeyError(f"No node labelled {label!r} in {self.name}") from None

    def state(self):
        seen: set[int] = set()
        out = []
        for layer in self.children():
            for arr in layer.state():
                if id(arr) not in seen:
                    seen.add(id(arr))
                    out.append(arr)
        return out

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        lines = [f"{type(self).__name__}(inputs={len(self._inputs)}"]
        for node in self._nodes.values():
            srcs = ', '.join(n.label or n.id[:8] for n in node.inputs)
            lines.append(f"  {node.label or node.id[:8]}: {node.layer!r} <- {srcs}")
        return '\n'.join(lines) + ')'


class PipelineNetwork(DAGNetwork):
    """A single-input chain of layers."""

    def __init__(self, *layers: Layer, name: str | None = None):
        super().__init__(1, name)
        for layer in layers:
            self.add(layer)

    def extend(self, layers: Iterable[Layer]) -> 'PipelineNetwork':
        for layer in layers:
            self.add(layer)
        return self


__all__ = ['DAGNetwork', 'PipelineNetwork', 'GraphEvaluationContext',
           'Node', 'InputNode', 'InnerNode']
