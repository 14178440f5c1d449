"""
Arena tree for hierarchical partitions.

Nodes live in one list and are addressed by integer index; each node keeps the
index of its parent and an ordered list of child indices. Leaves carry the index
of the engine leaf they stand for. Restructuring operations (collapsing levels,
inserting super modules, splitting a module into sub-modules) only rewire
indices, so detached nodes stay in the arena until the tree is compacted.
"""

from typing import List, Optional, Sequence, Dict, Iterator

from .map_equation import FlowData, MetaCollection
from .exceptions import LogicError


ROOT = 0


class Leaf:
    """Input of an engine: flow data, meta data and physical nodes of one leaf node."""
    __slots__ = ('data', 'meta', 'physical_nodes')

    def __init__(self, data: FlowData, meta: Optional[MetaCollection] = None, physical_nodes=None):
        self.data = data
        self.meta = meta
        self.physical_nodes = physical_nodes if physical_nodes is not None else []

    def __repr__(self):
        return f"Leaf({self.data!r})"


class TreeNode:
    __slots__ = ('data', 'parent', 'children', 'codelength', 'leaf_index')

    def __init__(self, data: FlowData, parent: Optional[int] = None, leaf_index: Optional[int] = None):
        self.data = data
        self.parent = parent
        self.children: List[int] = []
        self.codelength = 0.0
        self.leaf_index = leaf_index

    def __getstate__(self):
        return (self.data, self.parent, self.children, self.codelength, self.leaf_index)

    def __setstate__(self, state):
        self.data, self.parent, self.children, self.codelength, self.leaf_index = state


class InfoTree:
    """
    Hierarchy of modules over the leaves of one engine.

    Example Usage:
        tree = InfoTree.from_partition(root_data, leaves, leaf_module=[0, 0, 1, 1])
        tree.aggregate_flow(leaves, edges)
        codelength = tree.calc_codelength_on_tree(objective, leaves, include_root=True)
        for index in tree.pre_order():
            print(tree.depth(index), tree[index].data)
    """

    def __init__(self, root_data: FlowData):
        self.nodes: List[TreeNode] = [TreeNode(root_data.copy())]
        self.leaf_nodes: Dict[int, int] = {}

    @classmethod
    def from_partition(cls, root_data: FlowData, leaves: Sequence[Leaf], leaf_module: Sequence[int]) -> 'InfoTree':
        """Two-level tree: root, one module per distinct module index, leaves in index order."""
        tree = cls(root_data)
        module_node = {}
        for module in sorted(set(leaf_module)):
            module_node[module] = tree.add_child(ROOT, FlowData())
        for leaf_index, module in enumerate(leaf_module):
            tree.add_child(module_node[module], leaves[leaf_index].data.copy(), leaf_index)
        return tree

    def add_child(self, parent: int, data: FlowData, leaf_index: Optional[int] = None) -> int:
        index = len(self.nodes)
        self.nodes.append(TreeNode(data, parent, leaf_index))
        self.nodes[parent].children.append(index)
        if leaf_index is not None:
            self.leaf_nodes[leaf_index] = index
        return index

    def __getitem__(self, index: int) -> TreeNode:
        return self.nodes[index]

    def __len__(self):
        return len(self.nodes)

    # ========================================================================
    # Queries
    # ========================================================================

    def is_leaf(self, index: int) -> bool:
        return self.nodes[index].leaf_index is not None

    def is_leaf_module(self, index: int) -> bool:
        children = self.nodes[index].children
        return bool(children) and self.is_leaf(children[0])

    def children(self, index: int) -> List[int]:
        return self.nodes[index].children

    @property
    def top_modules(self) -> List[int]:
        return self.nodes[ROOT].children

    @property
    def num_top_modules(self) -> int:
        return len(self.nodes[ROOT].children)

    @property
    def num_non_trivial_top_modules(self) -> int:
        return sum(1 for module in self.top_modules if len(self.nodes[module].children) > 1)

    def pre_order(self, start: int = ROOT) -> Iterator[int]:
        """Depth-first pre-order, children in order."""
        stack = [start]
        while stack:
            index = stack.pop()
            yield index
            stack.extend(reversed(self.nodes[index].children))

    def leaves(self, start: int = ROOT) -> List[int]:
        return [index for index in self.pre_order(start) if self.is_leaf(index)]

    def leaf_modules(self) -> List[int]:
        return [index for index in self.pre_order() if self.is_leaf_module(index)]

    def depth(self, index: int) -> int:
        depth = 0
        parent = self.nodes[index].parent
        while parent is not None:
            depth += 1
            parent = self.nodes[parent].parent
        return depth

    def path(self, index: int) -> tuple:
        """1-based child positions from the root down to index."""
        path = []
        while self.nodes[index].parent is not None:
            parent = self.nodes[index].parent
            path.append(self.nodes[parent].children.index(index) + 1)
            index = parent
        return tuple(reversed(path))

    def num_levels(self) -> int:
        """Depth of the deepest leaf."""
        return max((self.depth(index) for index in self.leaf_nodes.values()), default=0)

    def top_module_of(self, leaf_index: int) -> int:
        index = self.leaf_nodes[leaf_index]
        while self.nodes[index].parent != ROOT:
            index = self.nodes[index].parent
            if index is None:
                raise LogicError(f"Leaf {leaf_index} is detached from the tree")
        return index

    def top_module_assignment(self) -> List[int]:
        """Position of the top module of each leaf, in leaf index order."""
        position = {module: i for i, module in enumerate(self.top_modules)}
        return [position[self.top_module_of(leaf)] for leaf in range(len(self.leaf_nodes))]

    # ========================================================================
    # Restructuring
    # ========================================================================

    def replace_children_with_grandchildren(self, index: int):
        """Splice the children of every non-leaf child of index into its place."""
        new_children = []
        for child in self.nodes[index].children:
            if self.is_leaf(child):
                new_children.append(child)
                continue
            for grandchild in self.nodes[child].children:
                self.nodes[grandchild].parent = index
                new_children.append(grandchild)
            self.nodes[child].children = []
            self.nodes[child].parent = None
        self.nodes[index].children = new_children

    def remove_sub_modules(self) -> int:
        """Collapse every level between the top modules and the leaves. Returns levels removed."""
        num_removed = 0
        while self.num_levels() > 2:
            for module in list(self.top_modules):
                self.replace_children_with_grandchildren(module)
            num_removed += 1
        return num_removed

    def insert_super_level(self, super_module: Sequence[int]):
        """Group the top modules under new super modules, super_module[i] for top module i."""
        top_modules = list(self.top_modules)
        if len(super_module) != len(top_modules):
            raise LogicError(f"Got {len(super_module)} super module indices for {len(top_modules)} top modules")
        self.nodes[ROOT].children = []
        super_node = {}
        for module in sorted(set(super_module)):
            super_node[module] = self.add_child(ROOT, FlowData())
        for module, assignment in zip(top_modules, super_module):
            parent = super_node[assignment]
            self.nodes[module].parent = parent
            self.nodes[parent].children.append(module)

    def split_module(self, index: int, sub_module: Sequence[int]) -> List[int]:
        """
        Put the children of a module into new sub-modules.

        Args:
            index: Module to split
            sub_module: Sub-module index per child, in child order

        Returns:
            Tree indices of the new sub-modules
        """
        children = list(self.nodes[index].children)
        if len(sub_module) != len(children):
            raise LogicError(f"Got {len(sub_module)} sub-module indices for {len(children)} children")
        self.nodes[index].children = []
        sub_node = {}
        for module in sorted(set(sub_module)):
            sub_node[module] = self.add_child(index, FlowData())
        for child, assignment in zip(children, sub_module):
            parent = sub_node[assignment]
            self.nodes[child].parent = parent
            self.nodes[parent].children.append(child)
        return [sub_node[module] for module in sorted(sub_node)]

    def compacted(self) -> 'InfoTree':
        """Copy holding only the attached nodes, numbered in pre-order."""
        tree = InfoTree(self.nodes[ROOT].data)
        tree.nodes[ROOT].codelength = self.nodes[ROOT].codelength
        new_index = {ROOT: ROOT}
        for index in self.pre_order():
            if index == ROOT:
                continue
            node = self.nodes[index]
            copied = tree.add_child(new_index[node.parent], node.data.copy(), node.leaf_index)
            tree.nodes[copied].codelength = node.codelength
            new_index[index] = copied
        return tree

    # ========================================================================
    # Flow and codelength
    # ========================================================================

    def aggregate_flow(self, leaves: Sequence[Leaf], edges):
        """
        Recompute flow, enter and exit flow of every module from the leaves.

        A module's enter and exit flow is the sum over its leaves minus the flow
        on links that stay inside the module. The root keeps its own data.
        """
        for index in self.pre_order():
            node = self.nodes[index]
            if index != ROOT and not self.is_leaf(index):
                node.data = FlowData()

        for leaf_index, index in self.leaf_nodes.items():
            data = leaves[leaf_index].data
            self.nodes[index].data = data.copy()
            parent = self.nodes[index].parent
            while parent is not None and parent != ROOT:
                self.nodes[parent].data += data
                parent = self.nodes[parent].parent

        for source, target, flow in edges:
            ancestors = set()
            parent = self.nodes[self.leaf_nodes[source]].parent
            while parent is not None and parent != ROOT:
                ancestors.add(parent)
                parent = self.nodes[parent].parent
            common = self.nodes[self.leaf_nodes[target]].parent
            while common is not None and common != ROOT and common not in ancestors:
                common = self.nodes[common].parent
            while common is not None and common != ROOT:
                data = self.nodes[common].data
                data.enter_flow -= flow
                data.exit_flow -= flow
                common = self.nodes[common].parent

    def calc_codelength(self, index: int, objective, leaves: Sequence[Leaf]) -> float:
        """Codelength of one module given its children."""
        node = self.nodes[index]
        children_data = [self.nodes[child].data for child in node.children]
        is_leaf_module = self.is_leaf_module(index)
        meta_collection = None
        physical_flows = None
        if is_leaf_module:
            child_leaves = [leaves[self.nodes[child].leaf_index] for child in node.children]
            if child_leaves and child_leaves[0].meta is not None:
                meta_collection = MetaCollection()
                for leaf in child_leaves:
                    meta_collection.add(leaf.meta)
            if index != ROOT:
                physical_flow = {}
                for leaf in child_leaves:
                    for phys, flow in leaf.physical_nodes:
                        physical_flow[phys] = physical_flow.get(phys, 0.0) + flow
                if physical_flow:
                    physical_flows = [physical_flow[phys] for phys in sorted(physical_flow)]
        return objective.calc_codelength(node.data, children_data, is_leaf_module,
                                         meta_collection, physical_flows)

    def calc_codelength_on_tree(self, objective, leaves: Sequence[Leaf], include_root: bool = True) -> float:
        """Set the codelength of every module and return their sum."""
        total = 0.0
        for index in self.pre_order():
            if self.is_leaf(index):
                continue
            if index == ROOT and not include_root:
                continue
            node = self.nodes[index]
            node.codelength = self.calc_codelength(index, objective, leaves) if node.children else 0.0
            total += node.codelength
        return total

    def __getstate__(self):
        return {'nodes': self.nodes, 'leaf_nodes': self.leaf_nodes}

    def __setstate__(self, state):
        self.nodes = state['nodes']
        self.leaf_nodes = state['leaf_nodes']

    def __repr__(self):
        return f"InfoTree({len(self.leaf_nodes)} leaves, {self.num_top_modules} top modules)"
