"""
Read-only view on the winning hierarchy.

ResultTree wraps the compacted module tree of the best trial together with the
identity of every leaf (state id, physical id, layer id, name, meta category) and
exposes depth-first traversals, per-level module maps, a physical-node view that
merges the state nodes of one physical node within a module, and pandas /
networkx exports. Traversals yield immutable TreeRecord tuples and never modify
the tree.
"""

import networkx as nx
import pandas as pd
from collections import namedtuple, OrderedDict
from typing import Dict, Iterator, List, Optional, Sequence

from .map_equation import MetaCollection
from .tree import InfoTree, ROOT
from .exceptions import InputError


TreeRecord = namedtuple('TreeRecord', [
    'node_id',       # Physical node id for leaves, None for modules
    'module_id',     # 1-based id of the leaf's module, or of the module among modules at its depth
    'path',          # 1-based child positions from the root
    'depth',
    'flow',
    'enter_flow',
    'exit_flow',
    'codelength',
    'meta',          # {category: share} of the meta data below this node, None without meta data
    'state_id',
    'physical_id',
    'layer_id',
    'is_leaf',
    'name',
])

LeafInfo = namedtuple('LeafInfo', ['state_id', 'physical_id', 'layer_id', 'name', 'meta', 'is_feature'])


class ResultTree:
    """
    Traversal API over a finished hierarchy.

    Example Usage:
        result = driver.result
        print(result.codelength, result.num_top_modules)
        modules = result.get_modules()               # {node_id: top module id}
        finest = result.get_modules(depth_level=-1)  # {node_id: leaf module id}
        for record in result.iter_leaf_nodes():
            print(record.path, record.node_id, record.flow)
        df = result.to_dataframe("leaves")
    """

    def __init__(self, tree: InfoTree, leaf_info: Sequence[LeafInfo], edges=(), undirected: bool = True,
                 one_level_codelength: float = 0.0, entropy_rate: float = 0.0, have_memory: bool = False,
                 is_bipartite: bool = False, hide_bipartite_nodes: bool = False):
        self._tree = tree
        self._leaf_info = list(leaf_info)
        self._edges = list(edges)
        self.undirected = undirected
        self.one_level_codelength = one_level_codelength
        self.entropy_rate = entropy_rate
        self.have_memory = have_memory
        self.is_bipartite = is_bipartite
        self.hide_bipartite_nodes = hide_bipartite_nodes

        self._depth = {ROOT: 0}
        self._path = {ROOT: ()}
        for index in tree.pre_order():
            for position, child in enumerate(tree[index].children, start=1):
                self._depth[child] = self._depth[index] + 1
                self._path[child] = self._path[index] + (position,)
        self._module_ids = self._number_modules()
        self._leaf_module_ids = {module: i for i, module in enumerate(tree.leaf_modules(), start=1)}

    def _number_modules(self) -> Dict[int, int]:
        counters = {}
        ids = {}
        for index in self._tree.pre_order():
            if index == ROOT or self._tree.is_leaf(index):
                continue
            depth = self._depth[index]
            counters[depth] = counters.get(depth, 0) + 1
            ids[index] = counters[depth]
        return ids

    # ========================================================================
    # Summary
    # ========================================================================

    @property
    def codelength(self) -> float:
        """Hierarchical codelength of the whole tree in bits."""
        return sum(self._tree[index].codelength for index in self._tree.pre_order()
                   if not self._tree.is_leaf(index))

    @property
    def index_codelength(self) -> float:
        return self._tree[ROOT].codelength

    @property
    def module_codelength(self) -> float:
        return self.codelength - self.index_codelength

    @property
    def relative_codelength_savings(self) -> float:
        if self.one_level_codelength <= 0:
            return 0.0
        return 1.0 - self.codelength / self.one_level_codelength

    @property
    def num_top_modules(self) -> int:
        return self._tree.num_top_modules

    @property
    def num_non_trivial_top_modules(self) -> int:
        return self._tree.num_non_trivial_top_modules

    @property
    def num_levels(self) -> int:
        """Depth of the deepest leaf; 2 for a two-level partition."""
        return self._tree.num_levels()

    @property
    def max_depth(self) -> int:
        return max(self._depth.values())

    @property
    def num_leaf_modules(self) -> int:
        return len(self._leaf_module_ids)

    @property
    def num_leaf_nodes(self) -> int:
        return len(self._leaf_info)

    def codelength_per_level(self) -> List[float]:
        """Summed codelength of the modules at each depth, starting with the index codebook at depth 0."""
        levels = [0.0] * self.max_depth
        for index in self._tree.pre_order():
            if not self._tree.is_leaf(index):
                levels[self._depth[index]] += self._tree[index].codelength
        return levels

    # ========================================================================
    # Records
    # ========================================================================

    def _meta_below(self, index: int) -> Optional[Dict[int, float]]:
        if not self._leaf_info or self._leaf_info[0].meta is None:
            return None
        collection = MetaCollection()
        for leaf in self._tree.leaves(index):
            collection.add(self._leaf_info[self._tree[leaf].leaf_index].meta)
        return collection.distribution()

    def _record(self, index: int) -> TreeRecord:
        tree = self._tree
        node = tree[index]
        data = node.data
        if tree.is_leaf(index):
            info = self._leaf_info[node.leaf_index]
            return TreeRecord(info.physical_id, self._leaf_module_ids.get(node.parent, 0), self._path[index],
                              self._depth[index], data.flow, data.enter_flow, data.exit_flow, 0.0,
                              self._meta_below(index), info.state_id, info.physical_id, info.layer_id,
                              True, info.name)
        return TreeRecord(None, self._module_ids.get(index, 0), self._path[index], self._depth[index],
                          data.flow, data.enter_flow, data.exit_flow, node.codelength, self._meta_below(index),
                          None, None, None, False, None)

    def _hidden(self, index: int) -> bool:
        if not (self.hide_bipartite_nodes and self._tree.is_leaf(index)):
            return False
        return self._leaf_info[self._tree[index].leaf_index].is_feature

    def iter_tree(self) -> Iterator[TreeRecord]:
        """All nodes in depth-first pre-order, root first."""
        for index in self._tree.pre_order():
            if not self._hidden(index):
                yield self._record(index)

    def iter_leaf_nodes(self) -> Iterator[TreeRecord]:
        for index in self._tree.pre_order():
            if self._tree.is_leaf(index) and not self._hidden(index):
                yield self._record(index)

    def iter_modules(self) -> Iterator[TreeRecord]:
        """All modules below the root in pre-order."""
        for index in self._tree.pre_order():
            if index != ROOT and not self._tree.is_leaf(index):
                yield self._record(index)

    def iter_leaf_modules(self) -> Iterator[TreeRecord]:
        for index in self._tree.pre_order():
            if index != ROOT and self._tree.is_leaf_module(index):
                yield self._record(index)

    def _physical_leaves(self, module: int) -> List[TreeRecord]:
        """Leaves of a leaf module merged on physical id, in order of first appearance."""
        merged = OrderedDict()
        for child in self._tree.children(module):
            if self._hidden(child):
                continue
            record = self._record(child)
            existing = merged.get(record.physical_id)
            if existing is None:
                merged[record.physical_id] = record._replace(state_id=None, layer_id=None)
            else:
                merged[record.physical_id] = existing._replace(
                    flow=existing.flow + record.flow,
                    enter_flow=existing.enter_flow + record.enter_flow,
                    exit_flow=existing.exit_flow + record.exit_flow)
        base_path = self._path[module]
        return [record._replace(path=base_path + (position,))
                for position, record in enumerate(merged.values(), start=1)]

    def iter_physical_tree(self) -> Iterator[TreeRecord]:
        """Pre-order traversal where the state nodes of each leaf module are merged per physical node."""
        for index in self._tree.pre_order():
            if self._tree.is_leaf(index):
                continue
            yield self._record(index)
            if self._tree.is_leaf_module(index):
                yield from self._physical_leaves(index)

    def iter_physical_leaf_nodes(self) -> Iterator[TreeRecord]:
        for index in self._tree.pre_order():
            if self._tree.is_leaf_module(index):
                yield from self._physical_leaves(index)

    # ========================================================================
    # Module maps
    # ========================================================================

    def _module_at_depth(self, leaf: int, depth_level: int) -> int:
        """Tree index of the module holding leaf at depth_level, or of its deepest module if shallower."""
        if depth_level == -1:
            return self._tree[leaf].parent
        path = []
        index = self._tree[leaf].parent
        while index is not None and index != ROOT:
            path.append(index)
            index = self._tree[index].parent
        path.reverse()
        return path[min(depth_level, len(path)) - 1]

    def get_modules(self, depth_level: int = 1, states: bool = False) -> Dict[int, int]:
        """
        Module id of every node at one level of the hierarchy.

        Args:
            depth_level: 1 for top modules, 2 for their sub-modules and so on, -1 for the finest modules.
                Nodes above the requested depth keep their deepest module.
            states: Key on state ids instead of physical ids (memory networks)

        Returns:
            {node id: module id}, module ids numbered from 1 in order of first appearance in pre-order
        """
        if depth_level == 0 or depth_level < -1:
            raise InputError(f"depth_level must be positive or -1, got {depth_level}")
        modules = {}
        module_ids = {}
        for leaf in self._tree.leaves():
            if self._hidden(leaf):
                continue
            info = self._leaf_info[self._tree[leaf].leaf_index]
            key = info.state_id if states else info.physical_id
            if key in modules:
                continue
            module = self._module_at_depth(leaf, depth_level)
            modules[key] = module_ids.setdefault(module, len(module_ids) + 1)
        return modules

    def get_multilevel_modules(self, states: bool = False) -> Dict[int, tuple]:
        """{node id: (module id at depth 1, at depth 2, ...)} down to the deepest level."""
        num_module_levels = max(1, self.num_levels - 1)
        levels = [self.get_modules(depth, states) for depth in range(1, num_module_levels + 1)]
        return {node: tuple(level[node] for level in levels) for node in levels[0]}

    # ========================================================================
    # Export
    # ========================================================================

    def to_dataframe(self, kind: str = "tree") -> pd.DataFrame:
        """
        Records as a DataFrame.

        Args:
            kind: "tree", "leaves", "modules" or "physical"
        """
        iterators = {
            'tree': self.iter_tree,
            'leaves': self.iter_leaf_nodes,
            'modules': self.iter_modules,
            'physical': self.iter_physical_leaf_nodes,
        }
        if kind not in iterators:
            raise InputError(f"Unknown record kind {kind!r}, expected one of {', '.join(iterators)}")
        df = pd.DataFrame.from_records(list(iterators[kind]()), columns=TreeRecord._fields)
        df['path'] = df['path'].map(lambda path: ':'.join(str(p) for p in path))
        return df

    def to_networkx(self) -> nx.Graph:
        """Leaf network annotated with flow, top module and the module path of every node."""
        graph = nx.Graph() if self.undirected else nx.DiGraph()
        top_modules = self.get_modules(1, states=self.have_memory)
        finest_modules = self.get_modules(-1, states=self.have_memory)
        for record in self.iter_leaf_nodes():
            key = record.state_id if self.have_memory else record.node_id
            graph.add_node(key, flow=record.flow, module=top_modules[key], leaf_module=finest_modules[key],
                           path=':'.join(str(p) for p in record.path), name=record.name,
                           physical_id=record.physical_id, layer_id=record.layer_id)
        for source, target, flow in self._edges:
            source_key = self._leaf_key(source)
            target_key = self._leaf_key(target)
            if source_key in graph and target_key in graph:
                if graph.has_edge(source_key, target_key):
                    graph[source_key][target_key]['flow'] += flow
                else:
                    graph.add_edge(source_key, target_key, flow=flow)
        return graph

    def _leaf_key(self, leaf_index: int):
        info = self._leaf_info[leaf_index]
        return info.state_id if self.have_memory else info.physical_id

    def __repr__(self):
        return (f"ResultTree(codelength={self.codelength:.6f}, top_modules={self.num_top_modules}, "
                f"levels={self.num_levels})")
