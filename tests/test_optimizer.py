"""
Test cases for optimizer.py and aggregator.py modules
"""

import random
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowmap.map_equation import FlowData, MapEquation
from flowmap.aggregator import ActiveNetwork, build_leaf_network, consolidate_modules
from flowmap.optimizer import LocalMover
from flowmap.network import NetworkModel
from flowmap.config import load_config
from flowmap.core import TrialDriver
from flowmap._flow_driver import calculate_flow
from flowmap.tree import Leaf
from flowmap.exceptions import LogicError


TWO_TRIANGLES = [(0, 1), (1, 2), (2, 0), (3, 4), (4, 5), (5, 3)]
CHAINED_TRIANGLES = [(0, 1), (0, 2), (1, 2), (2, 3), (3, 4), (4, 5), (5, 6), (5, 7), (6, 7)]


def engine_input(links, **network_kwargs):
    driver = TrialDriver(NetworkModel(**network_kwargs).add_links(links))
    driver.flow = calculate_flow(driver.network, driver.config)
    return driver._build_leaves(driver.flow)


def make_mover(leaves, edges, seed=1, config=None):
    objective = MapEquation()
    objective.init_network(leaves, 0.0)
    mover = LocalMover(objective, random.Random(seed), config or load_config())
    mover.set_network(build_leaf_network(leaves, edges))
    mover.init_partition()
    return mover


class TestActiveNetwork:
    """Test cases for active networks"""

    def test_leaf_network(self):
        """Test that node i of the leaf network covers leaf i"""
        leaves = [Leaf(FlowData(0.5)), Leaf(FlowData(0.5))]
        network = build_leaf_network(leaves, [(0, 1, 0.2)])
        assert len(network) == 2
        assert network[1].members == [1]
        assert network[0].out_edges == [(1, 0.2)]
        assert network[1].in_edges == [(0, 0.2)]
        assert list(network[1].neighbours()) == [0]
        assert list(network.edges()) == [(0, 1, 0.2)]

    def test_leaf_data_is_copied(self):
        """Test that moving nodes never changes the engine leaves"""
        leaves = [Leaf(FlowData(0.5))]
        network = build_leaf_network(leaves, [])
        network[0].data.flow = 0.0
        assert leaves[0].data.flow == 0.5


class TestConsolidation:
    """Test cases for consolidating partitions into module networks"""

    def test_modules_renumbered_and_links_merged(self):
        """Test renumbering, member lists and merged module links"""
        leaves, edges = engine_input(CHAINED_TRIANGLES)
        mover = make_mover(leaves, edges)
        mover.move_to_predefined_modules([4, 4, 4, 2, 2, 7, 7, 7])
        module_network, new_index = consolidate_modules(mover.network, mover.node_module, mover.module_flow,
                                                        mover.objective, undirected=True)
        assert new_index == [1, 1, 1, 0, 0, 2, 2, 2]
        assert [node.members for node in module_network] == [[3, 4], [0, 1, 2], [5, 6, 7]]
        assert sorted(module_network.edges()) == [(0, 1, pytest.approx(1 / 9)), (0, 2, pytest.approx(1 / 9))]
        assert module_network[1].data.flow == pytest.approx(7 / 18)
        assert module_network[1].data.exit_flow == pytest.approx(1 / 18)

    def test_directed_links_keep_direction(self):
        """Test that directed module links are merged per direction"""
        leaves = [Leaf(FlowData(0.25)) for _ in range(4)]
        network = build_leaf_network(leaves, [(0, 2, 0.1), (1, 3, 0.2), (3, 0, 0.3)])
        module_flow = [FlowData(0.5), FlowData(0.5), FlowData(), FlowData()]
        module_network, _ = consolidate_modules(network, [0, 0, 1, 1], module_flow, MapEquation(), undirected=False)
        assert sorted(module_network.edges()) == [(0, 1, pytest.approx(0.3)), (1, 0, pytest.approx(0.3))]


class TestLocalMover:
    """Test cases for the core loop"""

    def test_requires_network(self):
        """Test that partitioning without a network is a usage error"""
        mover = LocalMover(MapEquation(), random.Random(0), load_config())
        with pytest.raises(LogicError):
            mover.init_partition()

    def test_singletons_after_init(self):
        """Test the initial singleton partition"""
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges)
        assert mover.node_module == list(range(6))
        assert mover.num_active_modules == 6
        assert mover.empty_modules == []

    def test_two_triangles(self):
        """Test that moving finds one module per triangle"""
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges)
        initial = mover.codelength
        num_effective_loops = mover.optimize(is_first_loop=True)
        assert num_effective_loops >= 1
        assert mover.codelength < initial
        modules = mover.node_module
        assert modules[0] == modules[1] == modules[2]
        assert modules[3] == modules[4] == modules[5]
        assert modules[0] != modules[3]

    def test_moves_never_increase_codelength(self):
        """Test that every sweep keeps or lowers the codelength"""
        leaves, edges = engine_input(CHAINED_TRIANGLES)
        mover = make_mover(leaves, edges, seed=5)
        codelength = mover.codelength
        for _ in range(5):
            mover.sweep()
            assert mover.codelength <= codelength + 1e-8
            codelength = mover.codelength

    def test_first_loop_leaves_joined_nodes(self):
        """Test that nodes already joined by others stay in place on the first loop"""
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges)
        mover.move_to_predefined_modules([0, 0, 2, 3, 4, 5])
        before = list(mover.node_module)
        mover.dirty = [True] * 6
        mover.sweep(is_first_loop=True)
        assert mover.node_module[0] == before[0]
        assert mover.node_module[1] == before[1]

    def test_empty_modules_tracked(self):
        """Test the stack of empty modules through predefined moves"""
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges)
        mover.move_to_predefined_modules([0, 0, 0, 3, 3, 3])
        assert sorted(mover.empty_modules) == [1, 2, 4, 5]
        assert mover.num_active_modules == 2
        assert mover.module_members[0] == 3

    def test_predefined_modules_length_checked(self):
        """Test that predefined modules must cover every active node"""
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges)
        with pytest.raises(LogicError):
            mover.move_to_predefined_modules([0, 0, 0])

    def test_same_seed_same_partition(self):
        """Test that the search is reproducible for a fixed seed"""
        leaves, edges = engine_input(CHAINED_TRIANGLES)
        first = make_mover(leaves, edges, seed=42)
        first.optimize()
        second = make_mover(leaves, edges, seed=42)
        second.optimize()
        assert first.node_module == second.node_module
        assert first.codelength == second.codelength

    def test_parallel_sweep(self):
        """Test that the threaded sweep reaches a partition at least as good as singletons"""
        config = load_config({'algorithm': {'inner_parallelization': True, 'num_workers': 3}})
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges, config=config)
        initial = mover.codelength
        mover.optimize()
        assert mover.codelength < initial
        fresh = MapEquation()
        fresh.init_network(leaves, 0.0)
        fresh.calculate_codelength(mover.module_flow)
        assert mover.codelength == pytest.approx(fresh.codelength, abs=1e-12)

    def test_randomized_loop_limit(self):
        """Test that a randomized loop limit still converges on a simple network"""
        config = load_config({'algorithm': {'randomize_core_loop_limit': True, 'core_loop_limit': 3}})
        leaves, edges = engine_input(TWO_TRIANGLES)
        mover = make_mover(leaves, edges, config=config)
        mover.optimize()
        assert mover.num_active_modules <= 6
