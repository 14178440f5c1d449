"""
Core flowmap functionality.

This module provides the user-facing driver of the clustering engine: it owns the
network and configuration, computes flow, runs independent optimization trials
and keeps the best hierarchy found.
"""

import time
import random
import logging
import threading
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Union, Dict, Any, List

from .config import load_config, load_default_config, validate_config
from .network import NetworkModel
from ._flow_driver import calculate_flow, FlowResult
from .map_equation import FlowData, MetaCollection
from .hierarchy import HierarchicalBuilder, MIN_CODELENGTH_IMPROVEMENT
from .tree import Leaf
from .results import ResultTree, LeafInfo
from .exceptions import FlowmapError, InputError, LogicError
from .utils import log_print, save_pickle, load_pickle


TrialResult = namedtuple('TrialResult', [
    'trial', 'seed', 'codelength', 'tree', 'one_level_codelength', 'num_top_modules', 'num_levels', 'elapsed',
])


"""============================================================================
Trial driver

Primary user interface for flowmap
============================================================================"""
class TrialDriver:
    """
    Runs the map equation search on a network and keeps the best solution.

    High-level functionality includes:
    1. Building the input network (directly or through the wrapped NetworkModel).
    2. Flow calculation under the configured random walk model.
    3. Independent seeded trials of the hierarchical search, optionally on a thread pool.
    4. Selection of the lowest codelength hierarchy and summary statistics.
    5. Saving and restoring the driver with its results.

    Example Usage:
        driver = TrialDriver(config={'algorithm': {'num_trials': 5, 'seed': 42}})
        driver.add_link(0, 1).add_link(1, 2).add_link(2, 0)
        driver.add_link(3, 4).add_link(4, 5).add_link(5, 3)
        result = driver.run()
        print(result.codelength, result.get_modules())

        # Start from a given partition and only evaluate it
        driver = TrialDriver(network, config={'algorithm': {'no_infomap': True}})
        driver.run(initial_partition={0: 1, 1: 1, 2: 2})

        # Restore previous state
        restored = TrialDriver.load("path/to/driver.pkl")
    """
    def __init__(self,
                 network: Optional[NetworkModel] = None,
                 config: Optional[Union[dict, str, Path]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the driver.

        Args:
            network: Network to cluster, an empty one configured from config if None
            config: Overrides (dict or YAML path) merged over the default configuration
            logger: Custom logger, creates default if None
        """
        self.config = load_config(config) if config is not None else self._get_default_config()
        self.logger = logger or self._setup_logger()

        if network is None:
            network = NetworkModel(include_self_links=self.config['network']['include_self_links'],
                                   weight_threshold=self.config['network']['weight_threshold'],
                                   directed=self.config['flow']['directed'])
        self.network = network

        self.flow: Optional[FlowResult] = None
        self.trial_results: List[TrialResult] = []
        self.statistics: Dict[str, Any] = {}
        self._best: Optional[TrialResult] = None
        self._result: Optional[ResultTree] = None
        self._best_lock = threading.Lock()

        self.logger.debug("TrialDriver initialized")

    # ============================================================================
    # Network building
    # ============================================================================
    def add_node(self, node_id: int, name=None, teleportation_weight: Optional[float] = None,
                 flow: Optional[float] = None) -> 'TrialDriver':
        self.network.add_node(node_id, name=name, teleportation_weight=teleportation_weight, flow=flow)
        return self

    def add_state_node(self, state_id: int, physical_id: int) -> 'TrialDriver':
        self.network.add_state_node(state_id, physical_id)
        return self

    def add_link(self, source: int, target: int, weight: float = 1.0, flow: Optional[float] = None) -> 'TrialDriver':
        self.network.add_link(source, target, weight, flow)
        return self

    def add_links(self, links) -> 'TrialDriver':
        self.network.add_links(links)
        return self

    def remove_link(self, source: int, target: int) -> 'TrialDriver':
        self.network.remove_link(source, target)
        return self

    def set_meta_data(self, node_id: int, category: int) -> 'TrialDriver':
        self.network.set_meta_data(node_id, category)
        return self

    def add_multilayer_intra_link(self, layer_id: int, source: int, target: int, weight: float = 1.0) -> 'TrialDriver':
        self.network.add_multilayer_intra_link(layer_id, source, target, weight)
        return self

    def add_multilayer_inter_link(self, source_layer_id: int, node_id: int, target_layer_id: int,
                                  weight: float = 1.0) -> 'TrialDriver':
        self.network.add_multilayer_inter_link(source_layer_id, node_id, target_layer_id, weight)
        return self

    def set_bipartite_start_id(self, start_id: int) -> 'TrialDriver':
        self.network.bipartite_start_id = start_id
        return self

    # ============================================================================
    # Running
    # ============================================================================
    def run(self, initial_partition: Optional[Dict[int, int]] = None) -> ResultTree:
        """
        Cluster the network.

        Args:
            initial_partition: {node id: module id} to start every trial from; nodes not
                listed start alone or, with assign_to_neighbouring_module, join a neighbour

        Returns:
            ResultTree of the trial with the lowest codelength
        """
        algorithm = self.config['algorithm']
        try:
            validate_config(self.config)
            self.network.validate(self.config)
            self.flow = calculate_flow(self.network, self.config)
            leaves, edges = self._build_leaves(self.flow)
            initial_modules = self._resolve_initial_partition(initial_partition, edges)
        except FlowmapError as e:
            self.logger.error(f"Cannot run on {self.network}: {e}")
            raise

        num_trials = algorithm['num_trials']
        self.logger.info(f"Running {num_trials} trial(s) on {len(leaves)} nodes and {len(edges)} links "
                         f"with flow model '{self.flow.flow_model.value}'")

        self.trial_results = []
        self._best = None
        self._result = None

        def run_trial(trial: int) -> TrialResult:
            return self._run_trial(trial, leaves, edges, initial_modules)

        try:
            if algorithm['num_workers'] > 1 and num_trials > 1:
                with ThreadPoolExecutor(max_workers=algorithm['num_workers']) as executor:
                    list(executor.map(run_trial, range(num_trials)))
            else:
                for trial in range(num_trials):
                    run_trial(trial)
        except FlowmapError as e:
            self.logger.error(f"Trial failed: {e}")
            raise

        self.trial_results.sort(key=lambda r: r.trial)
        best = self._select_best(self.trial_results)
        self._best = best
        self._result = self._make_result(best)
        self._update_statistics(best)

        if best.codelength > best.one_level_codelength + MIN_CODELENGTH_IMPROVEMENT:
            self.logger.warning(f"Best codelength {best.codelength:.9f} is worse than the one-level "
                                f"codelength {best.one_level_codelength:.9f}")
        self.logger.info(f"Best solution from trial {best.trial + 1}: {best.num_top_modules} top modules, "
                         f"{best.num_levels} levels, codelength {best.codelength:.9f} "
                         f"({self._result.relative_codelength_savings:.2%} savings)")
        return self._result

    def _run_trial(self, trial: int, leaves, edges, initial_modules) -> TrialResult:
        algorithm = self.config['algorithm']
        seed = algorithm['seed'] + trial
        start = time.perf_counter()
        builder = HierarchicalBuilder(leaves, edges, FlowData(sum(leaf.data.flow for leaf in leaves)),
                                      self.config, random.Random(seed), undirected=self.flow.undirected_clustering)
        builder.run(initial_modules, no_infomap=algorithm['no_infomap'])
        tree = builder.tree.compacted()
        result = TrialResult(trial, seed, builder.hierarchical_codelength, tree, builder.one_level_codelength,
                             tree.num_top_modules, tree.num_levels(), time.perf_counter() - start)

        with self._best_lock:
            self.trial_results.append(result)
            if self._best is None or result.codelength < self._best.codelength - MIN_CODELENGTH_IMPROVEMENT:
                self._best = result
        self.logger.info(f"Trial {trial + 1}/{algorithm['num_trials']}: {result.num_top_modules} top modules, "
                         f"codelength {result.codelength:.9f} in {result.elapsed:.3f}s")
        return result

    @staticmethod
    def _select_best(results: List[TrialResult]) -> TrialResult:
        """First trial in index order that no later trial beats by more than the threshold."""
        best = None
        for result in results:
            if best is None or result.codelength < best.codelength - MIN_CODELENGTH_IMPROVEMENT:
                best = result
        return best

    def _build_leaves(self, flow: FlowResult):
        """Leaf nodes with enter/exit flow from the links, plus the tree edges between them."""
        network = self.network
        num_nodes = len(flow.node_ids)
        enter = [0.0] * num_nodes
        exit_ = [0.0] * num_nodes
        edges = list(flow.tree_edges())
        for source, target, link_flow in edges:
            if flow.undirected_clustering:
                half_flow = link_flow / 2
                enter[source] += half_flow
                exit_[source] += half_flow
                enter[target] += half_flow
                exit_[target] += half_flow
            else:
                exit_[source] += link_flow
                enter[target] += link_flow

        unweighted_meta = self.config['meta_data']['unweighted_meta_data']
        leaves = []
        for i, node_id in enumerate(flow.node_ids):
            node_flow = float(flow.node_flow[i])
            meta = None
            if network.have_meta_data:
                weight = 1.0 / num_nodes if unweighted_meta else node_flow
                meta = MetaCollection.single(network.meta_data_of(node_id), weight)
            physical_nodes = [(network.physical_id_of(node_id), node_flow)] if network.have_memory else []
            leaves.append(Leaf(FlowData(node_flow, enter[i], exit_[i]), meta, physical_nodes))
        return leaves, edges

    def _resolve_initial_partition(self, initial_partition: Optional[Dict[int, int]], edges) -> Optional[List[int]]:
        """Module index per leaf from a {node id: module id} mapping."""
        if initial_partition is None:
            return None
        index_of = {node_id: i for i, node_id in enumerate(self.flow.node_ids)}
        unknown = [node_id for node_id in initial_partition if node_id not in index_of]
        if unknown:
            raise InputError(f"Initial partition refers to unknown node ids {sorted(unknown)[:10]}")

        num_nodes = len(index_of)
        modules = [None] * num_nodes
        module_index = {}
        for module_id in sorted(set(initial_partition.values())):
            module_index[module_id] = len(module_index)
        for node_id, module_id in initial_partition.items():
            modules[index_of[node_id]] = module_index[module_id]
        next_module = len(module_index)

        missing = [i for i in range(num_nodes) if modules[i] is None]
        if missing:
            self.logger.info(f"{len(missing)} nodes without an initial module")
        if missing and self.config['algorithm']['assign_to_neighbouring_module']:
            out_neighbours = [[] for _ in range(num_nodes)]
            in_neighbours = [[] for _ in range(num_nodes)]
            for source, target, _ in edges:
                out_neighbours[source].append(target)
                in_neighbours[target].append(source)
            for i in missing:
                neighbour = next((j for j in out_neighbours[i] + in_neighbours[i] if modules[j] is not None), None)
                if neighbour is not None:
                    modules[i] = modules[neighbour]
        for i in range(num_nodes):
            if modules[i] is None:
                modules[i] = next_module
                next_module += 1
        return modules

    def _make_result(self, best: TrialResult) -> ResultTree:
        network = self.network
        leaf_info = []
        for node_id in self.flow.node_ids:
            category = network.meta_data_of(node_id) if network.have_meta_data else None
            leaf_info.append(LeafInfo(
                state_id=node_id,
                physical_id=network.physical_id_of(node_id),
                layer_id=network.layer_id_of(node_id),
                name=network.name_of(node_id),
                meta=MetaCollection.single(category, 1.0) if category is not None else None,
                is_feature=network.is_feature_node(node_id),
            ))
        return ResultTree(best.tree, leaf_info, self.flow.tree_edges(), undirected=self.flow.undirected_clustering,
                          one_level_codelength=best.one_level_codelength, entropy_rate=self.flow.entropy_rate,
                          have_memory=network.have_memory, is_bipartite=network.is_bipartite,
                          hide_bipartite_nodes=self.config['output']['hide_bipartite_nodes'])

    def _update_statistics(self, best: TrialResult):
        codelengths = [r.codelength for r in self.trial_results]
        self.statistics = {
            'trial_codelengths': codelengths,
            'min_codelength': min(codelengths),
            'average_codelength': sum(codelengths) / len(codelengths),
            'max_codelength': max(codelengths),
            'best_trial': best.trial,
            'best_seed': best.seed,
            'one_level_codelength': best.one_level_codelength,
            'relative_codelength_savings': self._result.relative_codelength_savings,
            'entropy_rate': self.flow.entropy_rate,
            'num_top_modules': best.num_top_modules,
            'num_levels': best.num_levels,
            'codelength_per_level': self._result.codelength_per_level(),
            'elapsed': sum(r.elapsed for r in self.trial_results),
        }

    # ============================================================================
    # Results
    # ============================================================================
    @property
    def result(self) -> ResultTree:
        if self._result is None:
            raise LogicError("No result yet, call run() first")
        return self._result

    @property
    def codelength(self) -> float:
        return self.result.codelength

    def get_modules(self, depth_level: int = 1, states: bool = False) -> Dict[int, int]:
        return self.result.get_modules(depth_level, states)

    def summary(self) -> str:
        """Short text summary of the best solution."""
        stats = self.statistics
        if not stats:
            raise LogicError("No result yet, call run() first")
        codelengths = stats['trial_codelengths']
        return (f"Best codelength {min(codelengths):.9f} in {stats['num_top_modules']} top modules and "
                f"{stats['num_levels']} levels over {len(codelengths)} trial(s) "
                f"[min, avg, max] = [{stats['min_codelength']:.9f}, {stats['average_codelength']:.9f}, "
                f"{stats['max_codelength']:.9f}], one-level codelength {stats['one_level_codelength']:.9f}, "
                f"savings {stats['relative_codelength_savings']:.2%}, entropy rate {stats['entropy_rate']:.9f}")

    def print_summary(self):
        log_print(self.summary(), logger=self.logger, also_print=True)

    # ============================================================================
    # State persistence
    # ============================================================================
    def save(self, filepath: Union[str, Path]) -> str:
        """
        Save the driver with network, configuration and results for later restoration.

        Args:
            filepath: Destination pickle file
        """
        save_pickle(self, filepath)
        self.logger.info(f"TrialDriver state saved to {filepath}")
        return str(filepath)

    @staticmethod
    def load(filepath: Union[str, Path]) -> 'TrialDriver':
        """
        Load a previously saved driver.

        Args:
            filepath: Path to saved driver state file

        Returns:
            Restored TrialDriver instance
        """
        driver = load_pickle(filepath)
        driver.logger.info(f"TrialDriver state loaded from {filepath}")
        return driver

    def __getstate__(self):
        state = self.__dict__.copy()
        del state['_best_lock']
        return state

    def __setstate__(self, state):
        self.__dict__.update(state)
        self._best_lock = threading.Lock()

    # ============================================================================
    # Utility and configuration methods
    # ============================================================================
    def _get_default_config(self) -> dict:
        """Load default configuration from YAML file."""
        return load_default_config()

    def _setup_logger(self) -> logging.Logger:
        """Setup default logger for flowmap operations."""
        logger = logging.getLogger('flowmap')
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(str(self.config['logging']['level']).upper())
        return logger

    def get_status(self) -> dict:
        """Get current status of the driver."""
        return {
            'num_nodes': self.network.num_nodes,
            'num_links': self.network.num_links,
            'flow_calculated': self.flow is not None,
            'flow_model': self.flow.flow_model.value if self.flow is not None else None,
            'num_trials_run': len(self.trial_results),
            'best_codelength': self._best.codelength if self._best is not None else None,
            'num_top_modules': self._best.num_top_modules if self._best is not None else None,
        }

    def __repr__(self):
        return f"TrialDriver({self.network!r}, trials={len(self.trial_results)})"
