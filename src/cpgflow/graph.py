"""Flow graph of overlapping reads, plus a JSON loader for whole instances."""

import gzip
import json
import os
from dataclasses import dataclass, field
from typing import Hashable, Iterator, Optional

# Third party modules
import networkx as nx

from cpgflow.errors import GraphInvariantError


@dataclass(frozen=True)
class CpgOffset:
    """A CpG touched by a read, ``offset`` is 1-based from the read start."""

    offset: int
    methyl: bool = False


@dataclass
class Read:
    """An aligned read and the CpGs it covers."""

    start: int
    cpgs: list[CpgOffset] = field(default_factory=list)

    def positions(self) -> Iterator[tuple[int, bool]]:
        """Yield (genomic position, is methylated) for each touched CpG."""
        for entry in self.cpgs:
            yield self.start + entry.offset - 1, entry.methyl


Arc = tuple[Hashable, Hashable]


class FlowGraph:
    """A DAG of reads terminating in a single sink.

    Nodes carry an optional :class:`Read` and two structural flags: ``fake``
    (no read semantics) and ``childless`` (no informative out-arcs). Arcs are
    ``(source, target)`` tuples with a ``length`` weight.
    """

    def __init__(self):
        self.graph = nx.DiGraph()
        self.sink: Optional[Hashable] = None

    def add_node(
        self,
        node: Hashable,
        read: Optional[Read] = None,
        fake: bool = False,
        childless: bool = False,
    ) -> Hashable:
        self.graph.add_node(node, read=read, fake=fake, childless=childless)
        return node

    def set_sink(self, node: Hashable) -> Hashable:
        """Mark ``node`` as the sink, adding it as a fake node if needed."""
        if node not in self.graph:
            self.add_node(node, fake=True)
        self.sink = node
        return node

    def add_arc(self, source: Hashable, target: Hashable, length: float = 1.0) -> Arc:
        for node in (source, target):
            if node not in self.graph:
                raise GraphInvariantError(f"Arc endpoint {node!r} is not in the graph")
        self.graph.add_edge(source, target, length=float(length))
        return (source, target)

    def validate(self) -> None:
        """Check the graph has a sink and no cycles.

        Raises
        -------
        GraphInvariantError
            If the sink is missing or the graph is not acyclic.
        """
        if self.sink is None or self.sink not in self.graph:
            raise GraphInvariantError("Flow graph has no sink")
        if not nx.is_directed_acyclic_graph(self.graph):
            raise GraphInvariantError("Flow graph contains a cycle")

    def nodes(self) -> list[Hashable]:
        return list(self.graph.nodes)

    def real_nodes(self) -> list[Hashable]:
        """Nodes that are neither fake nor the sink."""
        return [
            v for v in self.graph.nodes if v != self.sink and not self.is_fake(v)
        ]

    def arcs(self) -> list[Arc]:
        return list(self.graph.edges)

    def out_arcs(self, node: Hashable) -> list[Arc]:
        return list(self.graph.out_edges(node))

    def sink_arcs(self) -> list[Arc]:
        if self.sink is None:
            raise GraphInvariantError("Flow graph has no sink")
        return list(self.graph.in_edges(self.sink))

    def source(self, arc: Arc) -> Hashable:
        return arc[0]

    def target(self, arc: Arc) -> Optional[Hashable]:
        """The arc's target, or None if it is not a node of this graph."""
        node = arc[1]
        return node if node in self.graph else None

    def is_fake(self, node: Hashable) -> bool:
        return bool(self.graph.nodes[node]["fake"])

    def is_childless(self, node: Hashable) -> bool:
        return bool(self.graph.nodes[node]["childless"])

    def read(self, node: Hashable) -> Optional[Read]:
        return self.graph.nodes[node]["read"]

    def length(self, arc: Arc) -> float:
        return self.graph.edges[arc]["length"]


def load_flow_graph(path: str) -> tuple[FlowGraph, Optional[dict]]:
    """Load a flow graph instance from a (optionally gzipped) JSON file.

    Args
    ----------
    path : str
        Path to a ``.json`` or ``.json.gz`` file.

    Returns
    -------
    tuple:
        The graph, and a ``{position: (coverage, methylated)}`` mapping if the
        file carries precomputed statistics (else None).

    Raises
    -------
    FileNotFoundError
        If the file cannot be read.
    GraphInvariantError
        If the described graph is malformed.
    """
    if not os.access(path, os.R_OK):
        raise FileNotFoundError("Cannot read instance file: " + os.path.abspath(path))

    opener = gzip.open if path.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8") as f:
        data = json.load(f)

    flow_graph = FlowGraph()
    for node in data.get("nodes", []):
        read = None
        if node.get("read") is not None:
            read = Read(
                start=int(node["read"]["start"]),
                cpgs=[
                    CpgOffset(int(offset), bool(methyl))
                    for offset, methyl in node["read"].get("cpgs", [])
                ],
            )
        flow_graph.add_node(
            node["id"],
            read=read,
            fake=bool(node.get("fake", False)),
            childless=bool(node.get("childless", False)),
        )

    if "sink" not in data:
        raise GraphInvariantError("Instance file does not name a sink")
    flow_graph.set_sink(data["sink"])

    for arc in data.get("arcs", []):
        flow_graph.add_arc(arc["source"], arc["target"], arc.get("length", 1.0))

    flow_graph.validate()

    stats = None
    if data.get("stats") is not None:
        # JSON keys are strings, convert them back to integer positions
        stats = {
            int(pos): (float(cov), float(meth))
            for pos, (cov, meth) in data["stats"].items()
        }

    return flow_graph, stats
