"""
Hierarchical partitioning engine.

HierarchicalBuilder finds a two-level partition of a (sub)network by repeated
local moving and aggregation, refines it with alternating fine and coarse
tuning, and then grows a multi-level hierarchy: super modules are searched for
on top of the top modules, and every module is recursively split into sub-modules
while that shortens the description. Sub-problems (coarse tuning, super modules
and sub-modules) are solved by nested builders on derived networks.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .aggregator import build_leaf_network, consolidate_modules
from .map_equation import FlowData, MapEquation, MetaCollection, create_objective
from .optimizer import LocalMover
from .tree import InfoTree, Leaf, ROOT
from .exceptions import LogicError


logger = logging.getLogger(__name__)

MIN_CODELENGTH_IMPROVEMENT = 1e-10


class HierarchicalBuilder:
    """
    Search engine for the partition of one network.

    The live state is the assignment of every leaf to a top module together with
    the consolidated module network and a copy of the objective taken at the last
    consolidation, so that an aggregation level without improvement can be undone.

    Example Usage:
        leaves = [Leaf(FlowData(flow, enter, exit)) for flow, enter, exit in node_flows]
        builder = HierarchicalBuilder(leaves, edges, FlowData(1.0), config, random.Random(123))
        builder.run()
        print(builder.hierarchical_codelength, builder.tree.num_top_modules)
    """

    def __init__(self, leaves: Sequence[Leaf], edges: Sequence[Tuple[int, int, float]], root_data: FlowData,
                 config: dict, rng, undirected: bool = True, objective: Optional[MapEquation] = None,
                 is_main: bool = True, is_super_network: bool = False, two_level: Optional[bool] = None,
                 only_super_modules: bool = False, tune_iteration_limit: Optional[int] = None):
        self.leaves = list(leaves)
        self.edges = list(edges)
        self.root_data = root_data.copy()
        self.config = config
        self.rng = rng
        self.undirected = undirected
        self.is_main = is_main
        self.is_super_network = is_super_network
        self.only_super_modules = only_super_modules

        algorithm = config['algorithm']
        self.two_level = algorithm['two_level'] if two_level is None else two_level
        self.tune_iteration_limit = (algorithm['tune_iteration_limit'] if tune_iteration_limit is None
                                     else tune_iteration_limit)
        self.tune_iteration_relative_threshold = algorithm['tune_iteration_relative_threshold']
        self.level_aggregation_limit = algorithm['level_aggregation_limit']
        self.fast_hierarchical_solution = algorithm['fast_hierarchical_solution']
        self.prefer_modular_solution = algorithm['prefer_modular_solution']
        self.no_coarse_tune = algorithm['no_coarse_tune']

        if objective is None:
            objective = self._new_objective()
        if is_super_network:
            objective.init_super_network(self.leaves, self.root_data.exit_flow)
        else:
            objective.init_network(self.leaves, self.root_data.exit_flow)

        self.leaf_network = build_leaf_network(self.leaves, self.edges)
        self.mover = LocalMover(objective, rng, config)
        self.module_network = None
        self.leaf_module: Optional[List[int]] = None
        self.consolidated_objective: Optional[MapEquation] = None
        self.tune_iteration_index = 0

        self.tree: Optional[InfoTree] = None
        self.one_level_codelength = self._calc_one_level_codelength()
        self.codelength = self.one_level_codelength
        self.hierarchical_codelength = self.one_level_codelength

    def _new_objective(self) -> MapEquation:
        if self.is_super_network:
            return MapEquation()
        have_memory = any(len(leaf.physical_nodes) > 0 for leaf in self.leaves)
        have_meta_data = any(leaf.meta is not None for leaf in self.leaves)
        return create_objective(have_memory, have_meta_data, self.config['meta_data']['meta_data_rate'])

    def _calc_one_level_codelength(self) -> float:
        meta_collection = None
        if self.leaves and self.leaves[0].meta is not None:
            meta_collection = MetaCollection()
            for leaf in self.leaves:
                meta_collection.add(leaf.meta)
        physical_flows = None
        if any(leaf.physical_nodes for leaf in self.leaves):
            physical_flow = {}
            for leaf in self.leaves:
                for phys, flow in leaf.physical_nodes:
                    physical_flow[phys] = physical_flow.get(phys, 0.0) + flow
            physical_flows = [physical_flow[phys] for phys in sorted(physical_flow)]
        return self.mover.objective.calc_codelength(self.root_data, [leaf.data for leaf in self.leaves], True,
                                                    meta_collection, physical_flows)

    def _sub_builder(self, leaves, edges, root_data, **kwargs) -> 'HierarchicalBuilder':
        return HierarchicalBuilder(leaves, edges, root_data, self.config, self.rng, self.undirected,
                                   is_main=False, **kwargs)

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def num_leaves(self) -> int:
        return len(self.leaves)

    @property
    def num_top_modules(self) -> int:
        if self.tree is not None:
            return self.tree.num_top_modules
        return self._num_active_modules()

    def _num_active_modules(self) -> int:
        return len(self.module_network) if self.module_network is not None else self.num_leaves

    @property
    def index_codelength(self) -> float:
        return self.tree[ROOT].codelength if self.tree is not None else 0.0

    @property
    def have_modules(self) -> bool:
        return self.module_network is not None

    # ========================================================================
    # Entry points
    # ========================================================================

    def run(self, initial_modules: Optional[Sequence[int]] = None, no_infomap: bool = False):
        """
        Partition the network and build the module tree.

        Args:
            initial_modules: Module index per leaf to start from instead of singletons
            no_infomap: Only evaluate the initial partition (or the one-module solution)

        Returns:
            self, with tree and codelengths set
        """
        if initial_modules is not None:
            self.init_partition(initial_modules)

        if no_infomap:
            if self.leaf_module is None:
                self.leaf_module = [0] * self.num_leaves
            self.codelength = self.mover.codelength if self.have_modules else self.one_level_codelength
            self._build_tree()
            return self

        if self.two_level:
            self.partition()
        else:
            self.hierarchical_partition()
        return self

    def init_partition(self, modules: Sequence[int]):
        """Move the leaves to the given modules and consolidate them as the starting point."""
        if len(modules) != self.num_leaves:
            raise LogicError(f"Got {len(modules)} initial modules for {self.num_leaves} leaves")
        self._activate(self.leaf_network)
        self.mover.move_to_predefined_modules(modules)
        self._consolidate(self.leaf_network)
        self.codelength = self.mover.codelength
        logger.debug(f"Initial partition with {len(self.module_network)} modules, codelength {self.codelength:.9f}")

    # ========================================================================
    # Two-level partition
    # ========================================================================

    def _activate(self, network):
        self.mover.set_network(network)
        self.mover.init_partition()

    def _consolidate(self, network):
        """Collapse the mover's partition of network into the new module network."""
        module_network, new_index = consolidate_modules(network, self.mover.node_module, self.mover.module_flow,
                                                        self.mover.objective, self.undirected)
        if self.leaf_module is None:
            self.leaf_module = [0] * self.num_leaves
        for position, node in enumerate(network):
            for leaf in node.members:
                self.leaf_module[leaf] = new_index[position]
        self.module_network = module_network
        self.consolidated_objective = self.mover.objective.copy()

    def _restore_if_no_improvement(self, force: bool = False) -> bool:
        """Go back to the objective of the last consolidation unless the codelength improved."""
        if self.consolidated_objective is None:
            return False
        if force or self.mover.codelength >= self.consolidated_objective.get_codelength() - MIN_CODELENGTH_IMPROVEMENT:
            self.mover.objective = self.consolidated_objective.copy()
            return True
        return False

    def find_top_modules_repeatedly(self, max_levels: int = 0):
        """Move and aggregate until a single module remains, nothing improves or max_levels is reached."""
        if max_levels <= 0:
            max_levels = None
        aggregation_level = 0
        num_levels_consolidated = 1 if self.have_modules else 0
        while self._num_active_modules() > 1 and num_levels_consolidated != max_levels:
            network = self.module_network if self.have_modules else self.leaf_network
            self._activate(network)
            is_first_loop = self.is_main and self.tune_iteration_index == 0 and network is self.leaf_network
            self.mover.optimize(aggregation_level=aggregation_level, is_first_loop=is_first_loop)

            if self.have_modules and self._restore_if_no_improvement():
                break
            self._consolidate(network)
            num_levels_consolidated += 1
            aggregation_level += 1
        self.codelength = self.mover.codelength

    def fine_tune(self) -> int:
        """Move leaves between the current modules. Returns the number of effective loops."""
        self._activate(self.leaf_network)
        self.mover.move_to_predefined_modules(self.leaf_module)
        num_effective_loops = self.mover.optimize()
        if num_effective_loops == 0:
            self._restore_if_no_improvement(force=True)
        else:
            self._consolidate(self.leaf_network)
        self.codelength = self.mover.codelength
        return num_effective_loops

    def coarse_tune(self) -> int:
        """
        Split every module into sub-modules and move the sub-modules between modules.

        Each module is partitioned on its own by a two-level builder without
        tuning; the leaves are moved to the resulting sub-modules, which are
        consolidated and then moved as units starting from their old modules.
        """
        module_offset = 0
        sub_module = [0] * self.num_leaves
        for module in self.module_network:
            members = module.members
            if len(members) < 2:
                for leaf in members:
                    sub_module[leaf] = module_offset
                module_offset += 1
                continue
            sub_leaves, sub_edges = self._induced_subnetwork(members)
            builder = self._sub_builder(sub_leaves, sub_edges, module.data, two_level=True, tune_iteration_limit=1)
            builder.partition()
            for leaf, sub_index in zip(members, builder.leaf_module):
                sub_module[leaf] = sub_index + module_offset
            module_offset += builder.num_top_modules

        old_module = list(self.leaf_module)
        self._activate(self.leaf_network)
        self.mover.move_to_predefined_modules(sub_module)
        self._consolidate(self.leaf_network)

        self._activate(self.module_network)
        self.mover.move_to_predefined_modules([old_module[node.members[0]] for node in self.module_network])
        num_effective_loops = self.mover.optimize(is_coarse_tune=True)
        self._consolidate(self.module_network)
        self.codelength = self.mover.codelength
        return num_effective_loops

    def partition(self):
        """Two-level partition with alternating fine and coarse tuning."""
        initial_codelength = self.one_level_codelength
        self.tune_iteration_index = 0
        self.find_top_modules_repeatedly(self.level_aggregation_limit)

        old_codelength = self.codelength
        do_fine_tune = True
        coarse_tuned = False
        while self._num_active_modules() > 1 and self.tune_iteration_index + 1 != self.tune_iteration_limit:
            self.tune_iteration_index += 1
            if do_fine_tune:
                if self.fine_tune() > 0:
                    self.find_top_modules_repeatedly(self.level_aggregation_limit)
            else:
                coarse_tuned = True
                if not self.no_coarse_tune and self.coarse_tune() > 0:
                    self.find_top_modules_repeatedly(self.level_aggregation_limit)

            new_codelength = self.codelength
            is_improvement = (new_codelength <= old_codelength - MIN_CODELENGTH_IMPROVEMENT and
                              new_codelength < old_codelength - initial_codelength *
                              self.tune_iteration_relative_threshold)
            if not is_improvement:
                if coarse_tuned:
                    break
            else:
                old_codelength = new_codelength
            do_fine_tune = not do_fine_tune

        if self.leaf_module is None:
            self.leaf_module = [0] * self.num_leaves

        num_non_trivial = sum(1 for node in self.module_network if len(node.members) > 1) if self.have_modules else 0
        if (not self.prefer_modular_solution and num_non_trivial > 0 and
                self.codelength > self.one_level_codelength):
            logger.debug(f"Two-level codelength {self.codelength:.9f} exceeds one-level codelength "
                         f"{self.one_level_codelength:.9f}, using one module")
            self.leaf_module = [0] * self.num_leaves
            self.module_network = None
            self.codelength = self.one_level_codelength

        self._build_tree()
        if self.is_main:
            logger.debug(f"Two-level solution: {self.tree.num_top_modules} modules, "
                         f"codelength {self.hierarchical_codelength:.9f}")

    def _build_tree(self):
        self.tree = InfoTree.from_partition(self.root_data, self.leaves, self.leaf_module)
        self._update_tree()

    def _update_tree(self):
        self.tree.aggregate_flow(self.leaves, self.edges)
        self.hierarchical_codelength = self.tree.calc_codelength_on_tree(self.mover.objective, self.leaves, True)

    def _induced_subnetwork(self, members: Sequence[int]):
        """Leaves and internal links of a set of leaves, renumbered in member order."""
        position = {leaf: i for i, leaf in enumerate(members)}
        leaves = [self.leaves[leaf] for leaf in members]
        edges = []
        for leaf in members:
            for target, flow in self.leaf_network[leaf].out_edges:
                if target in position:
                    edges.append((position[leaf], position[target], flow))
        return leaves, edges

    # ========================================================================
    # Multi-level hierarchy
    # ========================================================================

    def hierarchical_partition(self):
        self.partition()
        if self.num_top_modules == 1 or self.num_top_modules == self.num_leaves:
            return

        self.find_hierarchical_super_modules()

        if self.only_super_modules:
            if self.tree.remove_sub_modules() > 0:
                self._update_tree()
            return

        if self.fast_hierarchical_solution >= 2:
            return

        if self.fast_hierarchical_solution == 0:
            if self.tree.remove_sub_modules() > 0:
                self._update_tree()

        self.recursive_partition()

    def _super_network(self):
        """Top modules as leaves with node flow equal to enter flow, and the links between them."""
        tree = self.tree
        top_modules = tree.top_modules
        position = {module: i for i, module in enumerate(top_modules)}
        leaves = []
        for module in top_modules:
            data = tree[module].data
            leaves.append(Leaf(FlowData(data.enter_flow, data.enter_flow, data.exit_flow)))

        top_of_leaf = [position[tree.top_module_of(leaf)] for leaf in range(self.num_leaves)]
        module_edges = {}
        for source, target, flow in self.edges:
            source_module = top_of_leaf[source]
            target_module = top_of_leaf[target]
            if source_module == target_module:
                continue
            if self.undirected and source_module > target_module:
                source_module, target_module = target_module, source_module
            key = (source_module, target_module)
            module_edges[key] = module_edges.get(key, 0.0) + flow
        edges = [(source, target, flow) for (source, target), flow in module_edges.items()]

        sum_flow = sum(leaf.data.flow for leaf in leaves)
        root_data = FlowData(sum_flow, self.root_data.enter_flow, self.root_data.exit_flow)
        return leaves, edges, root_data

    def find_hierarchical_super_modules(self) -> int:
        """Add levels above the top modules while a two-level partition of them compresses the index codebook."""
        old_index_codelength = self.index_codelength
        num_levels_created = 0
        while True:
            leaves, edges, root_data = self._super_network()
            builder = self._sub_builder(leaves, edges, root_data, is_super_network=True, two_level=True)
            builder.partition()

            num_super_modules = builder.num_top_modules
            if num_super_modules == 1 or num_super_modules == self.tree.num_top_modules:
                logger.debug("No non-trivial super modules found")
                break
            if builder.hierarchical_codelength >= old_index_codelength - MIN_CODELENGTH_IMPROVEMENT:
                logger.debug("Super modules do not improve the index codelength")
                break

            self.tree.insert_super_level(builder.leaf_module)
            self._update_tree()
            old_index_codelength = builder.index_codelength
            num_levels_created += 1
            if self.tree.num_non_trivial_top_modules <= 1:
                break

        if num_levels_created > 0 and self.is_main:
            logger.debug(f"Added {num_levels_created} super levels, hierarchical codelength "
                         f"{self.hierarchical_codelength:.9f}")
        return num_levels_created

    def recursive_partition(self) -> int:
        """Split modules level by level into sub-modules while that shortens their description."""
        tree = self.tree
        queue = list(tree.top_modules) if self.fast_hierarchical_solution == 0 else tree.leaf_modules()
        level = 0
        while queue:
            next_queue = []
            for module in queue:
                next_queue.extend(self._partition_module(module))
            queue = next_queue
            level += 1
        self._update_tree()
        if self.is_main:
            logger.debug(f"Recursive partition done after {level} levels, hierarchical codelength "
                         f"{self.hierarchical_codelength:.9f}")
        return level

    def _partition_module(self, module: int) -> List[int]:
        """Try to split one leaf module. Returns the accepted sub-modules."""
        tree = self.tree
        module_codelength = tree.calc_codelength(module, self.mover.objective, self.leaves)
        tree[module].codelength = module_codelength
        children = tree.children(module)
        if len(children) <= 2:
            return []

        members = [tree[child].leaf_index for child in children]
        sub_leaves, sub_edges = self._induced_subnetwork(members)
        builder = self._sub_builder(sub_leaves, sub_edges, tree[module].data, only_super_modules=True)
        builder.run()

        num_sub_modules = builder.num_top_modules
        if num_sub_modules == 1 or num_sub_modules == len(children):
            return []
        if builder.hierarchical_codelength >= module_codelength - MIN_CODELENGTH_IMPROVEMENT:
            return []

        sub_modules = tree.split_module(module, builder.tree.top_module_assignment())
        # Leaves keep their global flow data, so the sub-network modules carry the global values
        for sub_module, top_module in zip(sub_modules, builder.tree.top_modules):
            tree[sub_module].data = builder.tree[top_module].data.copy()
        return sub_modules
