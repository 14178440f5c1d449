"""
Greedy local moving of nodes between modules.

LocalMover owns the live partition of one active network: module index per
node, aggregated flow per module, member counts and a stack of empty module
indices. Each sweep visits the dirty nodes in random order and moves every node
to the neighbouring (or empty) module that lowers the codelength the most.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence

from .map_equation import DeltaFlow, FlowData
from .exceptions import LogicError


logger = logging.getLogger(__name__)

MIN_SINGLE_NODE_CODELENGTH_IMPROVEMENT = 1e-10
AGGREGATED_LOOP_LIMIT = 20
MIN_RANDOMIZED_LOOP_LIMIT = 2


class LocalMover:
    """
    Core loop of the two-level search on one active network.

    Example Usage:
        mover = LocalMover(objective, rng, config)
        mover.set_network(active_network)
        mover.init_partition()
        num_effective_loops = mover.optimize()
        print(mover.codelength, mover.num_active_modules)
    """

    def __init__(self, objective, rng, config: dict):
        self.objective = objective
        self.rng = rng
        algorithm = config['algorithm']
        self.core_loop_limit = algorithm['core_loop_limit']
        self.min_codelength_improvement = algorithm['core_loop_codelength_threshold']
        self.randomize_core_loop_limit = algorithm['randomize_core_loop_limit']
        self.inner_parallelization = algorithm['inner_parallelization']
        self.num_workers = max(2, algorithm['num_workers'])

        self.network = None
        self.node_module: List[int] = []
        self.module_flow: List[FlowData] = []
        self.module_members: List[int] = []
        self.empty_modules: List[int] = []
        self.dirty: List[bool] = []
        self._lock = threading.Lock()

    # ========================================================================
    # Partition state
    # ========================================================================

    def set_network(self, network):
        self.network = network

    def init_partition(self):
        """Put each active node in its own module."""
        if self.network is None:
            raise LogicError("No active network to partition")
        num_nodes = len(self.network)
        self.node_module = list(range(num_nodes))
        self.module_flow = [node.data.copy() for node in self.network]
        self.module_members = [1] * num_nodes
        self.empty_modules = []
        self.dirty = [True] * num_nodes
        self.objective.init_partition(self.network.nodes)

    @property
    def codelength(self) -> float:
        return self.objective.get_codelength()

    @property
    def num_active_modules(self) -> int:
        return sum(1 for members in self.module_members if members > 0)

    def move_to_predefined_modules(self, modules: Sequence[int]):
        """
        Apply a given module assignment through incremental updates.

        Args:
            modules: Target module index per active node, each below the number of active nodes

        Returns:
            Number of nodes moved
        """
        num_nodes = len(self.network)
        if len(modules) != num_nodes:
            raise LogicError(f"Got {len(modules)} predefined modules for {num_nodes} active nodes")

        num_moved = 0
        for i, node in enumerate(self.network):
            old_module = self.node_module[i]
            new_module = modules[i]
            if new_module == old_module:
                continue
            old_delta = DeltaFlow(old_module)
            new_delta = DeltaFlow(new_module)
            for target, flow in node.out_edges:
                other = self.node_module[target]
                if other == old_module:
                    old_delta.delta_exit += flow
                elif other == new_module:
                    new_delta.delta_exit += flow
            for source, flow in node.in_edges:
                other = self.node_module[source]
                if other == old_module:
                    old_delta.delta_enter += flow
                elif other == new_module:
                    new_delta.delta_enter += flow

            self._commit_move(i, old_delta, new_delta)
            num_moved += 1

        # Modules emptied out of stack order
        self.empty_modules = [m for m in range(num_nodes) if self.module_members[m] == 0]
        return num_moved

    def _commit_move(self, i: int, old_delta: DeltaFlow, new_delta: DeltaFlow):
        old_module = old_delta.module
        new_module = new_delta.module
        if self.module_members[new_module] == 0 and new_module in self.empty_modules:
            self.empty_modules.remove(new_module)
        if self.module_members[old_module] == 1:
            self.empty_modules.append(old_module)

        self.objective.update_codelength_on_moving_node(self.network[i], old_delta, new_delta, self.module_flow)

        self.module_members[old_module] -= 1
        self.module_members[new_module] += 1
        self.node_module[i] = new_module

    # ========================================================================
    # Core loop
    # ========================================================================

    def optimize(self, aggregation_level: int = 0, is_coarse_tune: bool = False,
                 is_first_loop: bool = False) -> int:
        """
        Run sweeps until no node moves, the codelength stops improving or the loop limit is hit.

        Args:
            aggregation_level: 0 when the active network holds leaf nodes
            is_coarse_tune: Whether sub-modules are being moved during coarse tuning
            is_first_loop: Leave nodes that others already joined in place

        Returns:
            Number of sweeps that improved the codelength
        """
        loop_limit = self.core_loop_limit
        if loop_limit >= MIN_RANDOMIZED_LOOP_LIMIT and self.randomize_core_loop_limit:
            loop_limit = self.rng.randint(MIN_RANDOMIZED_LOOP_LIMIT, loop_limit)
        if aggregation_level > 0 or is_coarse_tune:
            loop_limit = AGGREGATED_LOOP_LIMIT

        core_loop_count = 0
        num_effective_loops = 0
        old_codelength = self.codelength
        while True:
            core_loop_count += 1
            if self.inner_parallelization:
                num_moved = self.sweep_parallel(is_first_loop)
            else:
                num_moved = self.sweep(is_first_loop)
            if num_moved == 0 or self.codelength >= old_codelength - self.min_codelength_improvement:
                break
            num_effective_loops += 1
            old_codelength = self.codelength
            if core_loop_count == loop_limit:
                break

        logger.debug(f"Optimized {len(self.network)} nodes into {self.num_active_modules} modules in "
                     f"{core_loop_count} loops ({num_effective_loops} effective), codelength {self.objective}")
        return num_effective_loops

    def _node_order(self) -> List[int]:
        order = list(range(len(self.network)))
        self.rng.shuffle(order)
        return order

    def _candidate_deltas(self, i: int):
        """Flow between node i and each candidate module, and the delta of the current module."""
        node = self.network[i]
        current_module = self.node_module[i]
        delta_flow: Dict[int, DeltaFlow] = {}
        for target, flow in node.out_edges:
            module = self.node_module[target]
            delta = delta_flow.get(module)
            if delta is None:
                delta_flow[module] = DeltaFlow(module, flow, 0.0)
            else:
                delta.delta_exit += flow
        for source, flow in node.in_edges:
            module = self.node_module[source]
            delta = delta_flow.get(module)
            if delta is None:
                delta_flow[module] = DeltaFlow(module, 0.0, flow)
            else:
                delta.delta_enter += flow

        old_delta = delta_flow.pop(current_module, None) or DeltaFlow(current_module)
        if self.module_members[current_module] > 1 and self.empty_modules:
            empty_module = self.empty_modules[-1]
            delta_flow.setdefault(empty_module, DeltaFlow(empty_module))

        self.objective.add_memory_contributions(node, old_delta, delta_flow)
        delta_flow.pop(current_module, None)
        return old_delta, [delta_flow[module] for module in sorted(delta_flow)]

    def _best_move(self, i: int, old_delta: DeltaFlow, candidates: List[DeltaFlow]):
        """
        Pick the target module for node i.

        Candidates are scanned in ascending module index. A candidate becomes the
        best when it beats the best delta by more than the single-node threshold;
        the candidate with the largest exit-flow connection wins whenever its
        delta is within the threshold of the best one.
        """
        node = self.network[i]
        best = old_delta
        best_delta_codelength = 0.0
        strongest = old_delta
        strongest_delta_codelength = 0.0
        for candidate in candidates:
            delta_codelength = self.objective.get_delta_codelength_on_moving_node(
                node, old_delta, candidate, self.module_flow)
            if delta_codelength < best_delta_codelength - MIN_SINGLE_NODE_CODELENGTH_IMPROVEMENT:
                best = candidate
                best_delta_codelength = delta_codelength
            if candidate.delta_exit > strongest.delta_exit:
                strongest = candidate
                strongest_delta_codelength = delta_codelength

        if (strongest.module != best.module and
                strongest_delta_codelength <= best_delta_codelength + MIN_SINGLE_NODE_CODELENGTH_IMPROVEMENT):
            best = strongest
            best_delta_codelength = strongest_delta_codelength
        return best, best_delta_codelength

    def _mark_neighbours_dirty(self, i: int):
        for neighbour in self.network[i].neighbours():
            self.dirty[neighbour] = True

    def sweep(self, is_first_loop: bool = False) -> int:
        """Try to move each dirty node into its best module. Returns the number of moved nodes."""
        num_moved = 0
        for i in self._node_order():
            if not self.dirty[i]:
                continue
            if is_first_loop and self.module_members[self.node_module[i]] > 1:
                continue

            old_delta, candidates = self._candidate_deltas(i)
            best, _ = self._best_move(i, old_delta, candidates)

            if best.module != old_delta.module:
                self._commit_move(i, old_delta, best)
                num_moved += 1
                self._mark_neighbours_dirty(i)
            else:
                self.dirty[i] = False
        return num_moved

    def sweep_parallel(self, is_first_loop: bool = False) -> int:
        """
        Evaluate moves on a thread pool and commit them one by one.

        Proposals are computed against the partition as it was when the worker
        read it, so every proposal is re-evaluated under the lock against the
        current partition and only committed if it still lowers the codelength.
        """
        order = [i for i in self._node_order() if self.dirty[i]]
        chunk_size = max(1, len(order) // self.num_workers + 1)
        chunks = [order[start:start + chunk_size] for start in range(0, len(order), chunk_size)]

        def propose(chunk):
            proposals = []
            for i in chunk:
                with self._lock:
                    if is_first_loop and self.module_members[self.node_module[i]] > 1:
                        continue
                    old_delta, candidates = self._candidate_deltas(i)
                    best, _ = self._best_move(i, old_delta, candidates)
                proposals.append((i, best.module if best.module != old_delta.module else None))
            return proposals

        num_moved = 0
        num_invalid = 0
        with ThreadPoolExecutor(max_workers=self.num_workers) as executor:
            for proposals in executor.map(propose, chunks):
                with self._lock:
                    for i, target in proposals:
                        if target is None:
                            self.dirty[i] = False
                            continue
                        if self._try_commit(i, target):
                            num_moved += 1
                        else:
                            num_invalid += 1

        if num_invalid:
            logger.debug(f"Parallel sweep discarded {num_invalid} stale moves")
        return num_moved

    def _try_commit(self, i: int, target: int) -> bool:
        current_module = self.node_module[i]
        if target == current_module:
            return False
        # An empty target may have been taken by another node in the meantime
        if self.module_members[target] == 0 and (self.module_members[current_module] == 1 or
                                                  target not in self.empty_modules):
            return False
        old_delta, candidates = self._candidate_deltas(i)
        new_delta = next((c for c in candidates if c.module == target), None)
        if new_delta is None:
            if self.module_members[target] != 0:
                return False
            new_delta = DeltaFlow(target)
        delta_codelength = self.objective.get_delta_codelength_on_moving_node(
            self.network[i], old_delta, new_delta, self.module_flow)
        if delta_codelength >= -MIN_SINGLE_NODE_CODELENGTH_IMPROVEMENT:
            return False
        self._commit_move(i, old_delta, new_delta)
        self._mark_neighbours_dirty(i)
        return True
