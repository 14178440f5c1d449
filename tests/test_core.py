"""
Comprehensive test cases for core.py module
"""

import math
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowmap.core import TrialDriver, TrialResult
from flowmap.network import NetworkModel
from flowmap.results import ResultTree
from flowmap.exceptions import InputError, LogicError, ConfigurationError


TWO_TRIANGLES = [(0, 1), (1, 2), (2, 0), (3, 4), (4, 5), (5, 3)]
CHAINED_TRIANGLES = [(0, 1), (0, 2), (1, 2), (2, 3), (3, 4), (4, 5), (5, 6), (5, 7), (6, 7)]


def same_groups(modules, groups):
    """Check that each group shares one module and groups do not share modules"""
    ids = [{modules[node] for node in group} for group in groups]
    return all(len(i) == 1 for i in ids) and len(set.union(*ids)) == len(groups)


class TestTrialDriverInitialization:
    """Test driver construction and network building"""

    def test_default_config(self):
        """Test that the default configuration is loaded"""
        driver = TrialDriver()
        assert driver.config['algorithm']['num_trials'] == 1
        assert driver.network.num_nodes == 0
        assert driver.flow is None

    def test_config_overrides(self):
        """Test dict overrides merged over the defaults"""
        driver = TrialDriver(config={'algorithm': {'num_trials': 3, 'seed': 7}})
        assert driver.config['algorithm']['num_trials'] == 3
        assert driver.config['algorithm']['seed'] == 7
        assert driver.config['algorithm']['core_loop_limit'] == 10

    def test_directed_network_from_config(self):
        """Test that the default network follows the configured direction"""
        driver = TrialDriver(config={'flow': {'directed': True}})
        assert driver.network.is_directed_input

    def test_builder_chaining(self):
        """Test that builder methods return the driver"""
        driver = TrialDriver()
        returned = driver.add_node(0, name="a").add_link(0, 1).add_links([(1, 2), (2, 0)])
        assert returned is driver
        assert driver.network.num_nodes == 3
        assert driver.network.num_links == 3
        driver.remove_link(2, 0)
        assert driver.network.num_links == 2

    def test_result_before_run(self):
        """Test that results are unavailable before running"""
        driver = TrialDriver()
        with pytest.raises(LogicError):
            driver.result
        with pytest.raises(LogicError):
            driver.summary()

    def test_status_before_run(self):
        """Test status of a fresh driver"""
        status = TrialDriver().add_link(0, 1).get_status()
        assert status['num_nodes'] == 2
        assert status['flow_calculated'] is False
        assert status['best_codelength'] is None


class TestTrialDriverRun:
    """Test clustering runs"""

    @pytest.fixture
    def driver(self):
        return TrialDriver().add_links(TWO_TRIANGLES)

    def test_two_triangles(self, driver):
        """Test that two disconnected triangles give two modules"""
        result = driver.run()
        assert isinstance(result, ResultTree)
        assert result.codelength == pytest.approx(math.log2(3))
        assert same_groups(driver.get_modules(), [[0, 1, 2], [3, 4, 5]])
        assert driver.codelength == result.codelength

    def test_codelength_not_above_one_level(self):
        """Test that the solution never loses against the one-level code"""
        driver = TrialDriver().add_links(CHAINED_TRIANGLES)
        result = driver.run()
        assert result.codelength <= result.one_level_codelength + 1e-10
        modules = driver.get_modules()
        assert modules[0] == modules[1] == modules[2]
        assert modules[5] == modules[6] == modules[7]
        assert modules[0] != modules[7]

    def test_single_node(self):
        """Test that a single node costs nothing to encode"""
        driver = TrialDriver().add_node(0)
        result = driver.run()
        assert result.codelength == pytest.approx(0.0)
        assert driver.get_modules() == {0: 1}

    def test_empty_network(self):
        """Test that an empty network is rejected"""
        with pytest.raises(InputError):
            TrialDriver().run()

    def test_invalid_config(self):
        """Test that invalid options are rejected at run time"""
        driver = TrialDriver().add_links(TWO_TRIANGLES)
        driver.config['algorithm']['num_trials'] = 0
        with pytest.raises(ConfigurationError):
            driver.run()

    def test_status_after_run(self, driver):
        """Test status once a run finished"""
        driver.run()
        status = driver.get_status()
        assert status['flow_calculated'] is True
        assert status['flow_model'] == 'undirected'
        assert status['num_trials_run'] == 1
        assert status['num_top_modules'] == 2
        assert status['best_codelength'] == pytest.approx(math.log2(3))

    def test_summary(self, driver):
        """Test the text summary"""
        driver.run()
        summary = driver.summary()
        assert "2 top modules" in summary
        assert "1 trial(s)" in summary

    def test_rerun_resets_trials(self, driver):
        """Test that a second run replaces earlier trial results"""
        driver.run()
        driver.run()
        assert len(driver.trial_results) == 1


class TestInitialPartition:
    """Test runs from a given partition"""

    def test_evaluate_partition_without_search(self):
        """Test that no_infomap keeps the given partition"""
        driver = TrialDriver(config={'algorithm': {'no_infomap': True, 'two_level': True}})
        driver.add_links(CHAINED_TRIANGLES)
        result = driver.run(initial_partition={i: (1 if i < 4 else 2) for i in range(8)})
        assert result.codelength == pytest.approx(2.60715482741224)
        assert same_groups(driver.get_modules(), [[0, 1, 2, 3], [4, 5, 6, 7]])

    def test_evaluate_three_modules(self):
        """Test the codelength of a three-module partition"""
        driver = TrialDriver(config={'algorithm': {'no_infomap': True, 'two_level': True}})
        driver.add_links(CHAINED_TRIANGLES)
        partition = {0: 'a', 1: 'a', 2: 'a', 3: 'b', 4: 'b', 5: 'c', 6: 'c', 7: 'c'}
        result = driver.run(initial_partition=partition)
        assert result.num_top_modules == 3
        assert result.codelength == pytest.approx(2.5555555555555554)

    def test_unknown_node(self):
        """Test that unknown node ids are rejected"""
        driver = TrialDriver().add_links(TWO_TRIANGLES)
        with pytest.raises(InputError):
            driver.run(initial_partition={0: 1, 42: 1})

    def test_missing_nodes_start_alone(self):
        """Test that unlisted nodes get their own modules"""
        driver = TrialDriver(config={'algorithm': {'no_infomap': True, 'two_level': True}})
        driver.add_links(TWO_TRIANGLES)
        result = driver.run(initial_partition={0: 1, 1: 1})
        assert result.num_top_modules == 5

    def test_assign_to_neighbouring_module(self):
        """Test that unlisted nodes join a neighbour's module"""
        driver = TrialDriver(config={'algorithm': {'no_infomap': True, 'two_level': True,
                                                   'assign_to_neighbouring_module': True}})
        driver.add_links(TWO_TRIANGLES)
        driver.run(initial_partition={0: 1, 3: 2})
        assert same_groups(driver.get_modules(), [[0, 1, 2], [3, 4, 5]])

    def test_search_from_partition(self):
        """Test that searching from a partition does not end worse than the partition"""
        partition = {i: i % 2 for i in range(8)}
        evaluated = TrialDriver(config={'algorithm': {'no_infomap': True, 'two_level': True}})
        evaluated.add_links(CHAINED_TRIANGLES).run(initial_partition=partition)
        searched = TrialDriver(config={'algorithm': {'two_level': True}}).add_links(CHAINED_TRIANGLES)
        searched.run(initial_partition=partition)
        assert searched.codelength <= evaluated.codelength + 1e-10


class TestTrials:
    """Test repeated trials and trial selection"""

    def test_trial_statistics(self):
        """Test per-trial bookkeeping"""
        driver = TrialDriver(config={'algorithm': {'num_trials': 4, 'seed': 11}})
        driver.add_links(CHAINED_TRIANGLES)
        driver.run()
        assert [r.trial for r in driver.trial_results] == [0, 1, 2, 3]
        assert [r.seed for r in driver.trial_results] == [11, 12, 13, 14]
        assert all(isinstance(r, TrialResult) for r in driver.trial_results)
        stats = driver.statistics
        assert stats['min_codelength'] <= stats['average_codelength'] <= stats['max_codelength']
        assert stats['min_codelength'] == pytest.approx(driver.codelength)
        assert len(stats['trial_codelengths']) == 4
        assert sum(stats['codelength_per_level']) == pytest.approx(driver.codelength)

    def test_first_best_trial_wins(self):
        """Test that ties keep the earliest trial"""
        driver = TrialDriver(config={'algorithm': {'num_trials': 3}})
        driver.add_links(TWO_TRIANGLES)
        driver.run()
        assert driver.statistics['best_trial'] == 0

    def test_select_best(self):
        """Test selection of the lowest codelength with a tolerance"""
        results = [TrialResult(i, i, codelength, None, 3.0, 1, 2, 0.0)
                   for i, codelength in enumerate([2.0, 1.5, 1.5 - 1e-12, 1.4])]
        assert TrialDriver._select_best(results).trial == 3
        assert TrialDriver._select_best(results[:3]).trial == 1

    def test_deterministic(self):
        """Test that the same seed gives the same solution"""
        config = {'algorithm': {'num_trials': 2, 'seed': 5}}
        first = TrialDriver(config=config).add_links(CHAINED_TRIANGLES)
        second = TrialDriver(config=config).add_links(CHAINED_TRIANGLES)
        first.run()
        second.run()
        assert first.statistics['trial_codelengths'] == second.statistics['trial_codelengths']
        assert first.get_modules() == second.get_modules()

    def test_parallel_trials(self):
        """Test that trials on worker threads match serial trials"""
        serial = TrialDriver(config={'algorithm': {'num_trials': 4}}).add_links(CHAINED_TRIANGLES)
        parallel = TrialDriver(config={'algorithm': {'num_trials': 4, 'num_workers': 2}})
        parallel.add_links(CHAINED_TRIANGLES)
        serial.run()
        parallel.run()
        assert parallel.statistics['trial_codelengths'] == pytest.approx(serial.statistics['trial_codelengths'])
        assert parallel.statistics['best_trial'] == serial.statistics['best_trial']
        assert parallel.get_modules() == serial.get_modules()


class TestNetworkKinds:
    """Test runs on directed, memory, meta data and bipartite networks"""

    def test_directed(self):
        """Test a directed run on two cycles"""
        driver = TrialDriver(config={'flow': {'directed': True}})
        driver.add_links([(0, 1), (1, 2), (2, 0), (3, 4), (4, 5), (5, 3), (2, 3, 0.1), (5, 0, 0.1)])
        result = driver.run()
        assert result.codelength <= result.one_level_codelength + 1e-10
        assert same_groups(driver.get_modules(), [[0, 1, 2], [3, 4, 5]])

    def test_meta_data(self):
        """Test that meta data runs and is reported"""
        driver = TrialDriver(config={'meta_data': {'meta_data_rate': 1.0}})
        driver.add_links(TWO_TRIANGLES)
        for node in range(6):
            driver.set_meta_data(node, 0 if node < 3 else 1)
        result = driver.run()
        assert same_groups(driver.get_modules(), [[0, 1, 2], [3, 4, 5]])
        top = [r for r in result.iter_modules() if r.depth == 1]
        assert all(len(r.meta) == 1 for r in top)

    def test_missing_meta_data(self):
        """Test that partial meta data is rejected"""
        driver = TrialDriver().add_links(TWO_TRIANGLES).set_meta_data(0, 1)
        with pytest.raises(InputError):
            driver.run()

    def test_state_network(self):
        """Test a memory network keyed on physical and state ids"""
        driver = TrialDriver()
        for state, physical in enumerate([0, 1, 2, 0, 3, 4, 5, 3]):
            driver.add_state_node(state, physical)
        driver.add_links([(0, 1), (1, 2), (2, 0), (3, 1), (4, 5), (5, 6), (6, 4), (7, 5)])
        result = driver.run()
        assert result.have_memory
        assert set(driver.get_modules(states=True)) == set(range(8))
        assert set(driver.get_modules()) == set(range(6))

    def test_bipartite_hidden_features(self):
        """Test that feature nodes can be hidden from the result"""
        driver = TrialDriver(config={'output': {'hide_bipartite_nodes': True}})
        driver.add_links([(0, 4), (1, 4), (2, 5), (3, 5)]).set_bipartite_start_id(4)
        driver.run()
        modules = driver.get_modules()
        assert set(modules) == {0, 1, 2, 3}
        assert same_groups(modules, [[0, 1], [2, 3]])


class TestPersistence:
    """Test save and load"""

    def test_save_and_load(self, tmp_path):
        """Test that a saved driver restores its results"""
        driver = TrialDriver().add_links(TWO_TRIANGLES)
        driver.run()
        path = driver.save(tmp_path / "driver.pkl")
        restored = TrialDriver.load(path)
        assert restored.codelength == pytest.approx(driver.codelength)
        assert restored.get_modules() == driver.get_modules()
        assert restored.statistics == driver.statistics

    def test_restored_driver_runs(self, tmp_path):
        """Test that a restored driver can run again"""
        driver = TrialDriver(config={'algorithm': {'num_trials': 2, 'num_workers': 2}})
        driver.add_links(TWO_TRIANGLES)
        driver.save(tmp_path / "driver.pkl")
        restored = TrialDriver.load(tmp_path / "driver.pkl")
        restored.run()
        assert restored.codelength == pytest.approx(math.log2(3))
