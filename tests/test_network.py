"""
Test cases for network.py module
"""

import pytest
import networkx as nx
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowmap.network import NetworkModel
from flowmap.config import load_config
from flowmap.exceptions import InputError, ConfigurationError


class TestNodesAndLinks:
    """Test cases for building first-order networks"""

    def test_links_add_end_nodes(self):
        """Test that adding a link adds both end nodes"""
        network = NetworkModel().add_link(0, 1).add_link(1, 2)
        assert network.num_nodes == 3
        assert network.num_links == 2
        assert network.node_ids() == [0, 1, 2]

    def test_repeated_links_accumulate(self):
        """Test that repeated links between an ordered pair accumulate weight"""
        network = NetworkModel().add_link(0, 1, 1.5).add_link(0, 1, 2.0)
        assert network.num_links == 1
        assert network.links[0].weight == pytest.approx(3.5)

    def test_self_links_skipped_by_default(self):
        """Test that self-links are counted but not stored unless included"""
        network = NetworkModel().add_link(0, 0)
        assert network.num_links == 0
        assert network.num_self_links_skipped == 1
        assert network.num_nodes == 1

        network = NetworkModel(include_self_links=True).add_link(0, 0)
        assert network.num_links == 1

    def test_weight_threshold(self):
        """Test that links below the threshold are skipped"""
        network = NetworkModel(weight_threshold=0.5).add_link(0, 1, 0.1).add_link(1, 2, 0.6)
        assert network.num_links == 1
        assert network.num_links_below_threshold == 1

    def test_node_attributes(self):
        """Test names, teleportation weights and flow on nodes"""
        network = NetworkModel().add_node(4, name="four", teleportation_weight=2.0, flow=0.3)
        assert network.name_of(4) == "four"
        assert network.teleportation_weight_of(4) == 2.0
        assert network.node_flow_of(4) == pytest.approx(0.3)
        network.add_node(5)
        assert network.teleportation_weight_of(5) == 1.0

    @pytest.mark.parametrize("source, target", [(-1, 0), (0, "a"), (1.5, 2), (True, 1)])
    def test_invalid_ids(self, source, target):
        """Test that ids must be non-negative integers"""
        with pytest.raises(InputError):
            NetworkModel().add_link(source, target)

    @pytest.mark.parametrize("weight", [-1.0, float('nan'), float('inf'), "heavy"])
    def test_invalid_weights(self, weight):
        """Test that weights must be finite and non-negative"""
        with pytest.raises(InputError):
            NetworkModel().add_link(0, 1, weight)

    def test_remove_link(self):
        """Test removing links between runs"""
        network = NetworkModel().add_link(0, 1).add_link(1, 2)
        network.remove_link(0, 1)
        assert network.num_links == 1
        with pytest.raises(InputError):
            network.remove_link(0, 1)

    def test_add_links(self):
        """Test adding links from tuples with and without weight"""
        network = NetworkModel().add_links([(0, 1), (1, 2, 3.0)])
        assert [link.weight for link in network.links] == [1.0, 3.0]


class TestStateNetworks:
    """Test cases for state (memory) networks"""

    @pytest.fixture
    def state_network(self):
        network = NetworkModel()
        network.add_state_node(10, 1).add_state_node(11, 1).add_state_node(20, 2)
        network.add_link(10, 20).add_link(20, 11)
        return network

    def test_state_ids(self, state_network):
        """Test that node ids are state ids bound to physical nodes"""
        assert state_network.have_memory
        assert state_network.node_ids() == [10, 11, 20]
        assert state_network.physical_id_of(11) == 1
        assert state_network.num_physical_nodes == 2

    def test_rebinding_state_node(self, state_network):
        """Test that a state node cannot move to another physical node"""
        with pytest.raises(InputError):
            state_network.add_state_node(10, 2)

    def test_unbound_state_in_link(self, state_network):
        """Test that links to unbound state ids fail validation"""
        state_network.add_link(20, 99)
        with pytest.raises(InputError):
            state_network.validate(load_config())


class TestMultilayer:
    """Test cases for multilayer expansion"""

    def test_intra_links_create_state_nodes(self):
        """Test that each (layer, node) pair becomes one state node"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1).add_multilayer_intra_link(2, 0, 1)
        assert network.is_multilayer
        assert network.num_nodes == 4
        assert network.layer_id_of(0) == 1
        assert network.physical_id_of(2) == 0
        assert network.layer_id_of(2) == 2

    def test_inter_link_between_same_layer(self):
        """Test that inter-layer links must connect two different layers"""
        with pytest.raises(InputError):
            NetworkModel().add_multilayer_inter_link(1, 0, 1)

    def test_cannot_mix_plain_and_multilayer_links(self):
        """Test that plain links and multilayer links do not mix"""
        network = NetworkModel().add_link(0, 1)
        with pytest.raises(InputError):
            network.add_multilayer_intra_link(1, 0, 1)

    def test_intra_links_without_relaxation(self):
        """Test expansion of undirected intra-layer links with a zero relax rate"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1, weight=2.0)
        config = load_config({'multilayer': {'relax_rate': 0.0}})
        links = network.flow_links(config, undirected=True)
        pairs = {(link.source, link.target): link.weight for link in links}
        assert pairs == {(0, 1): pytest.approx(1.0), (1, 0): pytest.approx(1.0)}

    def test_relax_rate_adds_cross_layer_links(self):
        """Test that relaxation links a node's state to its neighbours in other layers"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1).add_multilayer_intra_link(2, 0, 2)
        config = load_config({'multilayer': {'relax_rate': 0.4}})
        links = network.flow_links(config, undirected=False)
        state_01 = network._layer_node_to_state[(1, 0)]
        state_22 = network._layer_node_to_state[(2, 2)]
        pairs = {(link.source, link.target): link.weight for link in links}
        assert pairs[(state_01, state_22)] > 0
        state_11 = network._layer_node_to_state[(1, 1)]
        assert (state_11, state_22) not in pairs

    def test_relaxed_links_are_transition_probabilities(self):
        """Test that links leaving a state are probabilities independent of its strength"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1, weight=3.0)
        network.add_multilayer_intra_link(1, 0, 2, weight=1.0)
        network.add_multilayer_intra_link(2, 0, 1, weight=2.0)
        config = load_config({'multilayer': {'relax_rate': 0.5}})
        pairs = {(link.source, link.target): link.weight
                 for link in network.flow_links(config, undirected=False)}
        state = network._layer_node_to_state

        # Own layer 0.5 * w / s, then 0.5 split over layers by strength 4 : 2
        assert pairs[(state[(1, 0)], state[(1, 1)])] == pytest.approx(0.375 + 0.25)
        assert pairs[(state[(1, 0)], state[(1, 2)])] == pytest.approx(0.125 + 1 / 12)
        assert pairs[(state[(1, 0)], state[(2, 1)])] == pytest.approx(1 / 6)
        assert pairs[(state[(2, 0)], state[(2, 1)])] == pytest.approx(0.5 + 1 / 6)
        assert pairs[(state[(2, 0)], state[(1, 1)])] == pytest.approx(0.25)

        for source in (state[(1, 0)], state[(2, 0)]):
            out_weight = sum(w for (s, _), w in pairs.items() if s == source)
            assert out_weight == pytest.approx(1.0)

    def test_dangling_state_relaxes_to_other_layers(self):
        """Test that a state without out-links in its own layer still moves to other layers"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1).add_multilayer_intra_link(2, 1, 2)
        config = load_config({'multilayer': {'relax_rate': 0.2}})
        pairs = {(link.source, link.target): link.weight
                 for link in network.flow_links(config, undirected=False)}
        state = network._layer_node_to_state
        assert pairs[(state[(1, 1)], state[(2, 2)])] == pytest.approx(0.2)

    def test_intra_layer_input_relaxes_by_default(self):
        """Test that layers without inter-layer links are coupled with the default rate"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1).add_multilayer_intra_link(2, 0, 2)
        default = network.flow_links(load_config(), undirected=True)
        explicit = network.flow_links(load_config({'multilayer': {'relax_rate': 0.15}}), undirected=True)
        assert [(link.source, link.target) for link in default] == [(link.source, link.target) for link in explicit]
        assert [link.weight for link in default] == pytest.approx([link.weight for link in explicit])
        assert any(network.layer_id_of(link.source) != network.layer_id_of(link.target) for link in default)

    def test_inter_links_disable_default_relaxation(self):
        """Test that explicit inter-layer links are used as given without relaxation"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1).add_multilayer_intra_link(2, 0, 2)
        network.add_multilayer_inter_link(1, 0, 2, weight=0.5)
        pairs = {(link.source, link.target): link.weight
                 for link in network.flow_links(load_config(), undirected=False)}
        state = network._layer_node_to_state
        assert pairs == {(state[(1, 0)], state[(1, 1)]): pytest.approx(1.0),
                         (state[(2, 0)], state[(2, 2)]): pytest.approx(1.0),
                         (state[(1, 0)], state[(2, 2)]): pytest.approx(0.5)}


class TestRelaxLimits:
    """Test cases for layer limits and JSD weighting of relaxation"""

    @pytest.fixture
    def three_layers(self):
        """Node 0 links to a different node in each of layers 1, 2 and 3"""
        network = NetworkModel()
        for layer in (1, 2, 3):
            network.add_multilayer_intra_link(layer, 0, layer)
        return network

    @staticmethod
    def layer_moves(network, overrides):
        config = load_config({'multilayer': dict({'relax_rate': 0.3}, **overrides)})
        links = network.flow_links(config, undirected=False)
        return {(network.layer_id_of(link.source), network.layer_id_of(link.target))
                for link in links if network.physical_id_of(link.source) == 0}

    def test_without_limits_every_layer_is_reached(self, three_layers):
        """Test that negative limits relax to any layer"""
        moves = self.layer_moves(three_layers, {})
        assert moves == {(a, b) for a in (1, 2, 3) for b in (1, 2, 3)}

    def test_zero_limit_removes_cross_layer_links(self, three_layers):
        """Test that a relax limit of 0 keeps the walker in its layer"""
        assert self.layer_moves(three_layers, {'relax_limit': 0}) == {(1, 1), (2, 2), (3, 3)}
        config = load_config({'multilayer': {'relax_rate': 0.3, 'relax_limit': 0}})
        for link in three_layers.flow_links(config, undirected=False):
            assert link.weight == pytest.approx(1.0)

    def test_limit_bounds_layer_distance(self, three_layers):
        """Test that a relax limit of 1 only reaches neighbouring layers"""
        moves = self.layer_moves(three_layers, {'relax_limit': 1})
        assert (1, 2) in moves and (2, 3) in moves and (3, 2) in moves
        assert (1, 3) not in moves and (3, 1) not in moves

    def test_limit_up_acts_upwards_only(self, three_layers):
        """Test that relax_limit_up only blocks moves to higher layers"""
        moves = self.layer_moves(three_layers, {'relax_limit_up': 0})
        assert not any(b > a for a, b in moves)
        assert {(2, 1), (3, 1), (3, 2)} <= moves

    def test_limit_down_acts_downwards_only(self, three_layers):
        """Test that relax_limit_down only blocks moves to lower layers"""
        moves = self.layer_moves(three_layers, {'relax_limit_down': 0})
        assert not any(b < a for a, b in moves)
        assert {(1, 2), (1, 3), (2, 3)} <= moves

    def test_jsd_lowers_weight_toward_dissimilar_layer(self):
        """Test that JSD weighting moves less often to a layer with different out-links"""
        network = NetworkModel()
        network.add_multilayer_intra_link(1, 0, 1)
        network.add_multilayer_intra_link(2, 0, 1)
        network.add_multilayer_intra_link(3, 0, 1).add_multilayer_intra_link(3, 0, 3)
        state = network._layer_node_to_state

        def weights(by_jsd):
            config = load_config({'multilayer': {'relax_rate': 0.3, 'relax_by_jsd': by_jsd}})
            return {(link.source, link.target): link.weight
                    for link in network.flow_links(config, undirected=False)}

        plain, jsd = weights(False), weights(True)
        to_dissimilar = (state[(1, 0)], state[(3, 3)])
        to_identical = (state[(1, 0)], state[(2, 1)])
        assert 0 < jsd[to_dissimilar] < plain[to_dissimilar]
        assert jsd[to_identical] > plain[to_identical]
        assert sum(w for (s, _), w in jsd.items() if s == state[(1, 0)]) == pytest.approx(1.0)


class TestValidation:
    """Test cases for NetworkModel.validate"""

    def test_empty_network(self):
        """Test that an empty network is rejected"""
        with pytest.raises(InputError):
            NetworkModel().validate(load_config())

    def test_missing_meta_data(self):
        """Test that meta data must be given for every node once used"""
        network = NetworkModel().add_link(0, 1).set_meta_data(0, 1)
        with pytest.raises(InputError):
            network.validate(load_config())
        network.set_meta_data(1, 2)
        assert network.validate(load_config()) is network

    def test_unknown_bipartite_start_id(self):
        """Test that the bipartite start id must be a node id"""
        network = NetworkModel().add_link(0, 1)
        network.bipartite_start_id = 5
        with pytest.raises(InputError):
            network.validate(load_config())

    def test_relaxation_without_layers(self):
        """Test that multilayer options need multilayer input"""
        network = NetworkModel().add_link(0, 1)
        with pytest.raises(ConfigurationError):
            network.validate(load_config({'multilayer': {'relax_rate': 0.2}}))

    def test_precomputed_flow_needs_node_flow(self):
        """Test that the precomputed flow model needs flow on every node"""
        network = NetworkModel().add_link(0, 1).set_node_flow(0, 0.5)
        config = load_config({'flow': {'flow_model': 'precomputed'}})
        with pytest.raises(ConfigurationError):
            network.validate(config)
        network.set_node_flow(1, 0.5)
        network.validate(config)


class TestFromNetworkx:
    """Test cases for building networks from networkx graphs"""

    def test_integer_labels(self):
        """Test that integer labels are kept as node ids"""
        graph = nx.Graph()
        graph.add_edge(3, 7, weight=2.0)
        network = NetworkModel.from_networkx(graph)
        assert network.node_ids() == [3, 7]
        assert network.links[0].weight == 2.0
        assert not network.is_directed_input

    def test_string_labels_become_names(self):
        """Test that other labels are enumerated and kept as names"""
        graph = nx.DiGraph()
        graph.add_edge("a", "b")
        network = NetworkModel.from_networkx(graph)
        assert network.node_ids() == [0, 1]
        assert network.name_of(1) == "b"
        assert network.is_directed_input
