"""
Map equation objectives.

The map equation measures the expected number of bits per step needed to
describe a random walk with a two-part (index + module) code. Each objective
keeps cached per-partition terms so that the change in codelength of moving one
node between two modules is computed in constant time, and keeps the terms up to
date when a move is committed.

Three objectives share one interface:
1. MapEquation: first-order networks
2. MetaMapEquation: adds a rate-weighted entropy of node meta-data categories per module
3. MemMapEquation: state (memory) networks, where module codebooks encode physical nodes
"""

import copy
from collections import defaultdict
from typing import Optional, Sequence, Dict, List, Tuple

from .exceptions import InputError, LogicError
from .utils import plogp


"""============================================================================
Flow containers
============================================================================"""
class FlowData:
    """Node or module flow with its enter and exit flow."""
    __slots__ = ('flow', 'enter_flow', 'exit_flow')

    def __init__(self, flow: float = 0.0, enter_flow: float = 0.0, exit_flow: float = 0.0):
        self.flow = flow
        self.enter_flow = enter_flow
        self.exit_flow = exit_flow

    def copy(self) -> 'FlowData':
        return FlowData(self.flow, self.enter_flow, self.exit_flow)

    def __iadd__(self, other: 'FlowData') -> 'FlowData':
        self.flow += other.flow
        self.enter_flow += other.enter_flow
        self.exit_flow += other.exit_flow
        return self

    def __isub__(self, other: 'FlowData') -> 'FlowData':
        self.flow -= other.flow
        self.enter_flow -= other.enter_flow
        self.exit_flow -= other.exit_flow
        return self

    def __eq__(self, other):
        return (isinstance(other, FlowData) and self.flow == other.flow and
                self.enter_flow == other.enter_flow and self.exit_flow == other.exit_flow)

    def __getstate__(self):
        return (self.flow, self.enter_flow, self.exit_flow)

    def __setstate__(self, state):
        self.flow, self.enter_flow, self.exit_flow = state

    def __repr__(self):
        return f"FlowData(flow={self.flow:.6g}, enter={self.enter_flow:.6g}, exit={self.exit_flow:.6g})"


class DeltaFlow:
    """Flow between a node and one candidate module, plus memory-network terms."""
    __slots__ = ('module', 'delta_exit', 'delta_enter', 'sum_delta_plogp_phys_flow', 'sum_plogp_phys_flow')

    def __init__(self, module: int, delta_exit: float = 0.0, delta_enter: float = 0.0,
                 sum_delta_plogp_phys_flow: float = 0.0, sum_plogp_phys_flow: float = 0.0):
        self.module = module
        self.delta_exit = delta_exit
        self.delta_enter = delta_enter
        self.sum_delta_plogp_phys_flow = sum_delta_plogp_phys_flow
        self.sum_plogp_phys_flow = sum_plogp_phys_flow

    def __iadd__(self, other: 'DeltaFlow') -> 'DeltaFlow':
        self.delta_exit += other.delta_exit
        self.delta_enter += other.delta_enter
        self.sum_delta_plogp_phys_flow += other.sum_delta_plogp_phys_flow
        self.sum_plogp_phys_flow += other.sum_plogp_phys_flow
        return self

    def __repr__(self):
        return f"DeltaFlow(module={self.module}, exit={self.delta_exit:.6g}, enter={self.delta_enter:.6g})"


class MetaCollection:
    """Weights per meta-data category, with a flow-weighted entropy."""
    __slots__ = ('weights',)

    def __init__(self, weights: Optional[Dict[int, float]] = None):
        self.weights = dict(weights) if weights else {}

    @classmethod
    def single(cls, category: int, weight: float) -> 'MetaCollection':
        return cls({category: weight})

    def add(self, other: 'MetaCollection'):
        for category, weight in other.weights.items():
            self.weights[category] = self.weights.get(category, 0.0) + weight

    def remove(self, other: 'MetaCollection'):
        for category, weight in other.weights.items():
            remaining = self.weights.get(category, 0.0) - weight
            if abs(remaining) < 1e-15:
                self.weights.pop(category, None)
            else:
                self.weights[category] = remaining

    def entropy(self) -> float:
        """Total weight times the entropy of the category distribution, in bits."""
        total = sum(self.weights.values())
        return plogp(total) - sum(plogp(w) for w in self.weights.values())

    def copy(self) -> 'MetaCollection':
        return MetaCollection(self.weights)

    def distribution(self) -> Dict[int, float]:
        """Normalized category distribution."""
        total = sum(self.weights.values())
        return {c: w / total for c, w in sorted(self.weights.items())} if total > 0 else {}

    def __len__(self):
        return len(self.weights)

    def __getstate__(self):
        return self.weights

    def __setstate__(self, state):
        self.weights = state

    def __repr__(self):
        return f"MetaCollection({self.weights})"


"""============================================================================
Objectives
============================================================================"""
class MapEquation:
    """
    Two-level map equation on the active network of an optimizer.

    Terms are kept as sums of plogp values so that a move only touches the
    terms of the two modules involved:
        index codelength  = plogp(enter_flow) - enter_log_enter - plogp(exit_network_flow)
        module codelength = -exit_log_exit + flow_log_flow - node_flow_log_node_flow
    """

    def __init__(self):
        self.enter_flow = 0.0
        self.enter_flow_log_enter_flow = 0.0
        self.enter_log_enter = 0.0
        self.exit_log_exit = 0.0
        self.flow_log_flow = 0.0
        self.exit_network_flow = 0.0
        self.exit_network_flow_log_exit_network_flow = 0.0
        self.node_flow_log_node_flow = 0.0

        self.index_codelength = 0.0
        self.module_codelength = 0.0
        self.codelength = 0.0

    # ========================================================================
    # Init
    # ========================================================================

    def init_network(self, nodes, exit_network_flow: float = 0.0):
        """Set constant terms from the leaf nodes of the network this objective optimizes."""
        self.node_flow_log_node_flow = sum(plogp(node.data.flow) for node in nodes)
        self.init_sub_network(exit_network_flow)

    def init_super_network(self, nodes, exit_network_flow: float = 0.0):
        """Module network whose node flow is the enter flow of each module."""
        self.node_flow_log_node_flow = sum(plogp(node.data.enter_flow) for node in nodes)
        self.init_sub_network(exit_network_flow)

    def init_sub_network(self, exit_network_flow: float):
        self.exit_network_flow = exit_network_flow
        self.exit_network_flow_log_exit_network_flow = plogp(exit_network_flow)

    def init_partition(self, nodes):
        """Each node in its own module, module index equal to node position."""
        self.calculate_codelength([node.data for node in nodes])

    # ========================================================================
    # Codelength
    # ========================================================================

    def calculate_codelength(self, module_flow: Sequence[FlowData]):
        self.calculate_codelength_terms(module_flow)
        self.calculate_codelength_from_terms()

    def calculate_codelength_terms(self, module_flow: Sequence[FlowData]):
        self.enter_log_enter = 0.0
        self.flow_log_flow = 0.0
        self.exit_log_exit = 0.0
        self.enter_flow = 0.0
        for data in module_flow:
            self.flow_log_flow += plogp(data.flow + data.exit_flow)
            self.enter_log_enter += plogp(data.enter_flow)
            self.exit_log_exit += plogp(data.exit_flow)
            self.enter_flow += data.enter_flow
        self.enter_flow += self.exit_network_flow
        self.enter_flow_log_enter_flow = plogp(self.enter_flow)

    def calculate_codelength_from_terms(self):
        self.index_codelength = (self.enter_flow_log_enter_flow - self.enter_log_enter -
                                 self.exit_network_flow_log_exit_network_flow)
        self.module_codelength = -self.exit_log_exit + self.flow_log_flow - self.node_flow_log_node_flow
        self.codelength = self.index_codelength + self.module_codelength

    def get_codelength(self) -> float:
        return self.codelength

    def calc_codelength(self, parent: FlowData, children: Sequence[FlowData], is_leaf_module: bool,
                        meta_collection: Optional[MetaCollection] = None,
                        physical_flows: Optional[Sequence[float]] = None) -> float:
        """Codelength of one tree node given its children."""
        if is_leaf_module:
            return self.calc_codelength_on_module_of_leaf_nodes(parent, children)
        return self.calc_codelength_on_module_of_modules(parent, children)

    @staticmethod
    def calc_codelength_on_module_of_leaf_nodes(parent: FlowData, children: Sequence[FlowData],
                                                 child_flows: Optional[Sequence[float]] = None) -> float:
        total_parent_flow = parent.flow + parent.exit_flow
        if total_parent_flow < 1e-16:
            return 0.0
        flows = child_flows if child_flows is not None else [child.flow for child in children]
        index_length = -sum(plogp(flow / total_parent_flow) for flow in flows)
        index_length -= plogp(parent.exit_flow / total_parent_flow)
        return index_length * total_parent_flow

    @staticmethod
    def calc_codelength_on_module_of_modules(parent: FlowData, children: Sequence[FlowData]) -> float:
        if parent.flow < 1e-16:
            return 0.0
        sum_enter = 0.0
        sum_enter_log_enter = 0.0
        for child in children:
            sum_enter += child.enter_flow
            sum_enter_log_enter += plogp(child.enter_flow)
        return plogp(parent.exit_flow + sum_enter) - sum_enter_log_enter - plogp(parent.exit_flow)

    # ========================================================================
    # Moves
    # ========================================================================

    def add_memory_contributions(self, node, old_delta: DeltaFlow, delta_flow: Dict[int, DeltaFlow]):
        """Add candidate modules that share physical nodes with node. No-op for first-order networks."""

    def get_delta_codelength_on_moving_node(self, node, old_delta: DeltaFlow, new_delta: DeltaFlow,
                                            module_flow: List[FlowData]) -> float:
        old_module = old_delta.module
        new_module = new_delta.module
        delta_old = old_delta.delta_enter + old_delta.delta_exit
        delta_new = new_delta.delta_enter + new_delta.delta_exit
        old_data = module_flow[old_module]
        new_data = module_flow[new_module]
        data = node.data

        delta_enter = plogp(self.enter_flow + delta_old - delta_new) - self.enter_flow_log_enter_flow

        delta_enter_log_enter = (-plogp(old_data.enter_flow) - plogp(new_data.enter_flow) +
                                 plogp(old_data.enter_flow - data.enter_flow + delta_old) +
                                 plogp(new_data.enter_flow + data.enter_flow - delta_new))

        delta_exit_log_exit = (-plogp(old_data.exit_flow) - plogp(new_data.exit_flow) +
                               plogp(old_data.exit_flow - data.exit_flow + delta_old) +
                               plogp(new_data.exit_flow + data.exit_flow - delta_new))

        delta_flow_log_flow = (-plogp(old_data.exit_flow + old_data.flow) -
                               plogp(new_data.exit_flow + new_data.flow) +
                               plogp(old_data.exit_flow + old_data.flow - data.exit_flow - data.flow + delta_old) +
                               plogp(new_data.exit_flow + new_data.flow + data.exit_flow + data.flow - delta_new))

        return delta_enter - delta_enter_log_enter - delta_exit_log_exit + delta_flow_log_flow

    def update_codelength_on_moving_node(self, node, old_delta: DeltaFlow, new_delta: DeltaFlow,
                                         module_flow: List[FlowData]):
        old_module = old_delta.module
        new_module = new_delta.module
        delta_old = old_delta.delta_enter + old_delta.delta_exit
        delta_new = new_delta.delta_enter + new_delta.delta_exit
        old_data = module_flow[old_module]
        new_data = module_flow[new_module]

        self.enter_flow -= old_data.enter_flow + new_data.enter_flow
        self.enter_log_enter -= plogp(old_data.enter_flow) + plogp(new_data.enter_flow)
        self.exit_log_exit -= plogp(old_data.exit_flow) + plogp(new_data.exit_flow)
        self.flow_log_flow -= plogp(old_data.exit_flow + old_data.flow) + plogp(new_data.exit_flow + new_data.flow)

        old_data -= node.data
        new_data += node.data

        old_data.enter_flow += delta_old
        old_data.exit_flow += delta_old
        new_data.enter_flow -= delta_new
        new_data.exit_flow -= delta_new

        self.enter_flow += old_data.enter_flow + new_data.enter_flow
        self.enter_log_enter += plogp(old_data.enter_flow) + plogp(new_data.enter_flow)
        self.exit_log_exit += plogp(old_data.exit_flow) + plogp(new_data.exit_flow)
        self.flow_log_flow += plogp(old_data.exit_flow + old_data.flow) + plogp(new_data.exit_flow + new_data.flow)

        self.enter_flow_log_enter_flow = plogp(self.enter_flow)
        self.calculate_codelength_from_terms()

    # ========================================================================
    # Consolidation
    # ========================================================================

    def module_meta_collection(self, module: int) -> Optional[MetaCollection]:
        return None

    def physical_nodes_by_module(self) -> Dict[int, List[Tuple[int, float]]]:
        """Sorted (physical id, flow) pairs per module, empty without memory."""
        return {}

    def copy(self) -> 'MapEquation':
        return copy.deepcopy(self)

    def __str__(self):
        return f"{self.index_codelength:.9f} + {self.module_codelength:.9f} = {self.get_codelength():.9f}"


class MetaMapEquation(MapEquation):
    """
    Map equation with meta data.

    Every module additionally pays meta_data_rate times the flow-weighted entropy
    of the meta-data categories of its nodes.
    """

    def __init__(self, meta_data_rate: float = 1.0):
        super().__init__()
        self.meta_data_rate = meta_data_rate
        self.meta_codelength = 0.0
        self._module_meta: Dict[int, MetaCollection] = {}

    def init_partition(self, nodes):
        self._module_meta = {}
        for i, node in enumerate(nodes):
            if node.meta is None:
                raise InputError("A node is missing meta data")
            self._module_meta[i] = node.meta.copy()
        self.calculate_codelength([node.data for node in nodes])
        self.meta_codelength = sum(node.meta.entropy() for node in nodes)

    def get_codelength(self) -> float:
        return self.codelength + self.meta_data_rate * self.meta_codelength

    def calc_codelength(self, parent, children, is_leaf_module, meta_collection=None, physical_flows=None):
        if not is_leaf_module:
            return self.calc_codelength_on_module_of_modules(parent, children)
        codelength = self.calc_codelength_on_module_of_leaf_nodes(parent, children)
        if meta_collection is not None:
            codelength += self.meta_data_rate * meta_collection.entropy()
        return codelength

    def _module_meta_entropy(self, module: int, node_meta: MetaCollection, add_or_remove: int) -> float:
        collection = self._module_meta.setdefault(module, MetaCollection())
        if add_or_remove == 0:
            return collection.entropy()
        changed = collection.copy()
        if add_or_remove > 0:
            changed.add(node_meta)
        else:
            changed.remove(node_meta)
        return changed.entropy()

    def get_delta_codelength_on_moving_node(self, node, old_delta, new_delta, module_flow):
        delta_l = super().get_delta_codelength_on_moving_node(node, old_delta, new_delta, module_flow)
        old_module, new_module = old_delta.module, new_delta.module
        delta_meta = (-self._module_meta_entropy(old_module, node.meta, 0) -
                      self._module_meta_entropy(new_module, node.meta, 0) +
                      self._module_meta_entropy(old_module, node.meta, -1) +
                      self._module_meta_entropy(new_module, node.meta, 1))
        return delta_l + self.meta_data_rate * delta_meta

    def update_codelength_on_moving_node(self, node, old_delta, new_delta, module_flow):
        super().update_codelength_on_moving_node(node, old_delta, new_delta, module_flow)
        old_meta = self._module_meta.setdefault(old_delta.module, MetaCollection())
        new_meta = self._module_meta.setdefault(new_delta.module, MetaCollection())
        self.meta_codelength -= old_meta.entropy() + new_meta.entropy()
        old_meta.remove(node.meta)
        new_meta.add(node.meta)
        self.meta_codelength += old_meta.entropy() + new_meta.entropy()

    def module_meta_collection(self, module: int) -> Optional[MetaCollection]:
        collection = self._module_meta.get(module)
        return collection.copy() if collection is not None else MetaCollection()

    def __str__(self):
        return (f"{self.index_codelength:.9f} + {self.module_codelength:.9f} + "
                f"{self.meta_data_rate * self.meta_codelength:.9f} = {self.get_codelength():.9f}")


class MemMapEquation(MapEquation):
    """
    Map equation for state networks.

    Module codebooks encode physical nodes: the flow of all state nodes of one
    physical node within a module shares one codeword. The node-flow term is
    therefore a sum over (module, physical node) pairs, and moving a state node
    into a module that already holds its physical node is cheaper.
    """

    def __init__(self):
        super().__init__()
        # physical node -> module -> [number of state nodes, summed flow]
        self._phys_to_module: Dict[int, Dict[int, List]] = defaultdict(dict)

    def init_network(self, nodes, exit_network_flow: float = 0.0):
        self.init_sub_network(exit_network_flow)

    def init_partition(self, nodes):
        self._phys_to_module = defaultdict(dict)
        for i, node in enumerate(nodes):
            for phys, flow in node.physical_nodes:
                self._phys_to_module[phys][i] = [1, flow]
        self.calculate_codelength_terms([node.data for node in nodes])
        self._calculate_node_flow_log_node_flow()
        self.calculate_codelength_from_terms()

    def _calculate_node_flow_log_node_flow(self):
        self.node_flow_log_node_flow = sum(plogp(entry[1])
                                           for modules in self._phys_to_module.values()
                                           for entry in modules.values())

    def calc_codelength(self, parent, children, is_leaf_module, meta_collection=None, physical_flows=None):
        if not is_leaf_module:
            return self.calc_codelength_on_module_of_modules(parent, children)
        return self.calc_codelength_on_module_of_leaf_nodes(parent, children, physical_flows)

    def add_memory_contributions(self, node, old_delta, delta_flow):
        for phys, flow in node.physical_nodes:
            for module, (_, sum_flow) in self._phys_to_module[phys].items():
                if module == old_delta.module:
                    old_delta.sum_delta_plogp_phys_flow += plogp(sum_flow - flow) - plogp(sum_flow)
                    old_delta.sum_plogp_phys_flow += plogp(flow)
                else:
                    contribution = DeltaFlow(module, 0.0, 0.0, plogp(sum_flow + flow) - plogp(sum_flow), plogp(flow))
                    if module in delta_flow:
                        delta_flow[module] += contribution
                    else:
                        delta_flow[module] = contribution

    @staticmethod
    def _delta_node_flow_log_node_flow(old_delta, new_delta) -> float:
        return (old_delta.sum_delta_plogp_phys_flow + new_delta.sum_delta_plogp_phys_flow +
                old_delta.sum_plogp_phys_flow - new_delta.sum_plogp_phys_flow)

    def get_delta_codelength_on_moving_node(self, node, old_delta, new_delta, module_flow):
        delta_l = super().get_delta_codelength_on_moving_node(node, old_delta, new_delta, module_flow)
        return delta_l - self._delta_node_flow_log_node_flow(old_delta, new_delta)

    def update_codelength_on_moving_node(self, node, old_delta, new_delta, module_flow):
        super().update_codelength_on_moving_node(node, old_delta, new_delta, module_flow)
        # Recompute the physical node terms from the current assignment
        old_module, new_module = old_delta.module, new_delta.module
        delta_node_flow = 0.0
        for phys, flow in node.physical_nodes:
            modules = self._phys_to_module[phys]
            entry = modules.get(old_module)
            if entry is None:
                raise LogicError(f"Physical node {phys} is not assigned to module {old_module}")
            delta_node_flow += plogp(entry[1] - flow) - plogp(entry[1])
            entry[0] -= 1
            entry[1] -= flow
            if entry[0] == 0:
                del modules[old_module]

            entry = modules.get(new_module)
            if entry is None:
                modules[new_module] = [1, flow]
                delta_node_flow += plogp(flow)
            else:
                delta_node_flow += plogp(entry[1] + flow) - plogp(entry[1])
                entry[0] += 1
                entry[1] += flow
        self.node_flow_log_node_flow += delta_node_flow
        self.module_codelength -= delta_node_flow
        self.codelength -= delta_node_flow

    def physical_nodes_by_module(self) -> Dict[int, List[Tuple[int, float]]]:
        by_module = defaultdict(list)
        for phys in sorted(self._phys_to_module):
            for module, (_, flow) in self._phys_to_module[phys].items():
                by_module[module].append((phys, flow))
        return dict(by_module)


def create_objective(have_memory: bool, have_meta_data: bool, meta_data_rate: float = 1.0) -> MapEquation:
    """Pick the objective for a network."""
    if have_memory:
        return MemMapEquation()
    if have_meta_data:
        return MetaMapEquation(meta_data_rate)
    return MapEquation()
