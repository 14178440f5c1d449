"""
Active networks and module consolidation.

The optimizer works on an "active network": the leaf nodes of a (sub)network, or
the modules found at the previous aggregation level. Consolidation collapses the
current partition of an active network into a coarser one where every module is
a single node and parallel links between two modules are merged.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .map_equation import FlowData, MetaCollection


logger = logging.getLogger(__name__)


class ActiveNode:
    """A node of the active network: one leaf or one consolidated module."""
    __slots__ = ('data', 'meta', 'physical_nodes', 'out_edges', 'in_edges', 'members')

    def __init__(self, data: FlowData, meta: Optional[MetaCollection] = None,
                 physical_nodes: Optional[List[Tuple[int, float]]] = None,
                 members: Optional[List[int]] = None):
        self.data = data
        self.meta = meta
        self.physical_nodes = physical_nodes if physical_nodes is not None else []
        # (neighbour position, flow)
        self.out_edges: List[Tuple[int, float]] = []
        self.in_edges: List[Tuple[int, float]] = []
        # Leaf indices of the engine network covered by this node
        self.members: List[int] = members if members is not None else []

    def neighbours(self):
        for target, _ in self.out_edges:
            yield target
        for source, _ in self.in_edges:
            yield source

    def __repr__(self):
        return f"ActiveNode({self.data!r}, members={len(self.members)})"


class ActiveNetwork:
    """Nodes addressed by position with out- and in-edge lists."""

    def __init__(self, nodes: Optional[List[ActiveNode]] = None):
        self.nodes: List[ActiveNode] = nodes if nodes is not None else []
        self.num_edges = 0

    def add_edge(self, source: int, target: int, flow: float):
        self.nodes[source].out_edges.append((target, flow))
        self.nodes[target].in_edges.append((source, flow))
        self.num_edges += 1

    def edges(self):
        """Yield (source, target, flow) in insertion order of the source nodes."""
        for source, node in enumerate(self.nodes):
            for target, flow in node.out_edges:
                yield source, target, flow

    def __len__(self):
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def __getitem__(self, index):
        return self.nodes[index]

    def __repr__(self):
        return f"ActiveNetwork({len(self.nodes)} nodes, {self.num_edges} edges)"


# ============================================================================
# Network construction
# ============================================================================

def build_leaf_network(leaves: Sequence, edges: Sequence[Tuple[int, int, float]]) -> ActiveNetwork:
    """
    Active network over the leaf nodes of an engine.

    Args:
        leaves: Objects with data (FlowData), meta and physical_nodes attributes
        edges: (source index, target index, flow) between leaves, self-links excluded

    Returns:
        ActiveNetwork whose node i covers leaf i
    """
    network = ActiveNetwork([
        ActiveNode(leaf.data.copy(), leaf.meta, list(leaf.physical_nodes), [i])
        for i, leaf in enumerate(leaves)
    ])
    for source, target, flow in edges:
        network.add_edge(source, target, flow)
    return network


def consolidate_modules(network: ActiveNetwork, node_module: Sequence[int], module_flow: Sequence[FlowData],
                        objective, undirected: bool) -> Tuple[ActiveNetwork, List[int]]:
    """
    Collapse a partition of an active network into a module network.

    Modules are renumbered in ascending order of their current index. Links
    between nodes of different modules are summed into one module link; with
    undirected clustering the module link goes from the lower to the higher
    module index.

    Args:
        network: The active network that was partitioned
        node_module: Module index per active node
        module_flow: Flow data per module index, as kept by the optimizer
        objective: Objective holding the per-module meta and physical node terms
        undirected: Whether links are undirected

    Returns:
        (module network, new module position for each active node)
    """
    used_modules = sorted(set(node_module))
    position_of = {module: position for position, module in enumerate(used_modules)}

    physical_nodes = objective.physical_nodes_by_module()
    module_nodes = []
    for module in used_modules:
        module_nodes.append(ActiveNode(module_flow[module].copy(),
                                       objective.module_meta_collection(module),
                                       physical_nodes.get(module)))

    new_index = [position_of[module] for module in node_module]
    for node, position in zip(network, new_index):
        module_nodes[position].members.extend(node.members)

    module_edges = {}
    for source, target, flow in network.edges():
        source_module = new_index[source]
        target_module = new_index[target]
        if source_module == target_module:
            continue
        if undirected and source_module > target_module:
            source_module, target_module = target_module, source_module
        key = (source_module, target_module)
        module_edges[key] = module_edges.get(key, 0.0) + flow

    module_network = ActiveNetwork(module_nodes)
    for (source, target), flow in module_edges.items():
        module_network.add_edge(source, target, flow)

    logger.debug(f"Consolidated {len(network)} nodes into {len(module_network)} modules "
                 f"with {module_network.num_edges} links")
    return module_network, new_index
