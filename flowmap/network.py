"""
Network model for flowmap.

NetworkModel holds everything the clustering engine reads as input: physical
nodes, optional state nodes (higher-order / memory networks), weighted links,
meta data, bipartite layout, precomputed flow and multilayer links. It is a plain
container with validation; flow is computed from it by the flow driver.

Example Usage:
    network = NetworkModel()
    network.add_link(0, 1).add_link(1, 2).add_link(2, 0)
    network.add_node(3, name="isolated")

    # Multilayer input, expanded to a state network before flow calculation
    multilayer = NetworkModel()
    multilayer.add_multilayer_intra_link(1, 0, 1, weight=2.0)
    multilayer.add_multilayer_inter_link(1, 0, 2, weight=0.5)
"""

import math
import logging
import numpy as np
import networkx as nx
from collections import defaultdict, OrderedDict
from typing import Optional, Dict, List, Tuple, Iterable

from .exceptions import InputError, ConfigurationError
from .utils import jensen_shannon_divergence


logger = logging.getLogger(__name__)

# Relax rate used for multilayer input without inter-layer links
DEFAULT_RELAX_RATE = 0.15


class PhysicalNode:
    """A real-world entity. First-order networks use one state node per physical node."""
    __slots__ = ('id', 'name', 'teleportation_weight', 'flow')

    def __init__(self, node_id: int, name=None, teleportation_weight: Optional[float] = None,
                 flow: Optional[float] = None):
        self.id = node_id
        self.name = name
        self.teleportation_weight = teleportation_weight
        self.flow = flow

    def __repr__(self):
        return f"PhysicalNode(id={self.id}, name={self.name!r})"


class StateNode:
    """A physical node conditioned on walk history, or on a layer in multilayer input."""
    __slots__ = ('id', 'physical_id', 'layer_id', 'teleportation_weight', 'flow')

    def __init__(self, state_id: int, physical_id: int, layer_id: Optional[int] = None,
                 teleportation_weight: Optional[float] = None, flow: Optional[float] = None):
        self.id = state_id
        self.physical_id = physical_id
        self.layer_id = layer_id
        self.teleportation_weight = teleportation_weight
        self.flow = flow

    def __repr__(self):
        return f"StateNode(id={self.id}, physical_id={self.physical_id}, layer_id={self.layer_id})"


class Link:
    """Directed (source, target) pair with accumulated weight and optional precomputed flow."""
    __slots__ = ('source', 'target', 'weight', 'flow')

    def __init__(self, source: int, target: int, weight: float = 1.0, flow: Optional[float] = None):
        self.source = source
        self.target = target
        self.weight = weight
        self.flow = flow

    def __repr__(self):
        return f"Link({self.source} -> {self.target}, weight={self.weight})"


class NetworkModel:
    """
    Input network for the clustering engine.

    Node and link ids are integers. In a first-order network the links connect
    physical node ids directly; once add_state_node has been called the links
    connect state ids, and each state id must be bound to a physical node.
    Repeated links between the same ordered pair accumulate weight.
    """

    def __init__(self, include_self_links: bool = False, weight_threshold: float = 0.0,
                 directed: bool = False):
        """
        Args:
            include_self_links: Keep links from a node to itself (ignored as tree edges)
            weight_threshold: Links with lower weight than this are skipped
            directed: Mark the input as directed; the driver then uses directed flow
        """
        self.include_self_links = include_self_links
        self.weight_threshold = weight_threshold
        self.is_directed_input = directed

        self._physical_nodes: Dict[int, PhysicalNode] = OrderedDict()
        self._state_nodes: Dict[int, StateNode] = OrderedDict()
        self._links: Dict[Tuple[int, int], Link] = OrderedDict()
        self._meta_data: Dict[int, int] = {}
        self._bipartite_start_id: Optional[int] = None

        # Multilayer input, expanded into state nodes and links on demand
        self._layer_node_to_state: Dict[Tuple[int, int], int] = {}
        self._intra_links: Dict[Tuple[int, int, int], float] = OrderedDict()
        self._inter_links: Dict[Tuple[int, int, int], float] = OrderedDict()

        self.num_self_links_skipped = 0
        self.num_links_below_threshold = 0

    # ========================================================================
    # Nodes
    # ========================================================================

    def add_node(self, node_id: int, name=None, teleportation_weight: Optional[float] = None,
                 flow: Optional[float] = None) -> 'NetworkModel':
        """Add a physical node, or update name/weight/flow of an existing one."""
        node_id = self._check_id(node_id, "node id")
        if teleportation_weight is not None:
            self._check_weight(teleportation_weight, f"teleportation weight of node {node_id}")
        node = self._physical_nodes.get(node_id)
        if node is None:
            node = self._physical_nodes[node_id] = PhysicalNode(node_id)
        if name is not None:
            node.name = name
        if teleportation_weight is not None:
            node.teleportation_weight = float(teleportation_weight)
        if flow is not None:
            node.flow = self._check_weight(flow, f"flow of node {node_id}")
        return self

    def add_nodes(self, nodes: Iterable) -> 'NetworkModel':
        """Add nodes given as ids or (id, name) / (id, name, teleportation_weight) tuples."""
        for node in nodes:
            if isinstance(node, (tuple, list)):
                self.add_node(*node)
            else:
                self.add_node(node)
        return self

    def add_state_node(self, state_id: int, physical_id: int, teleportation_weight: Optional[float] = None,
                       flow: Optional[float] = None) -> 'NetworkModel':
        """Declare a state node bound to a physical node; makes this a state (memory) network."""
        state_id = self._check_id(state_id, "state id")
        physical_id = self._check_id(physical_id, "physical id")
        if self._layer_node_to_state:
            raise InputError("Cannot mix explicit state nodes with multilayer links")
        existing = self._state_nodes.get(state_id)
        if existing is not None and existing.physical_id != physical_id:
            raise InputError(f"State node {state_id} is already bound to physical node {existing.physical_id}")
        if physical_id not in self._physical_nodes:
            self._physical_nodes[physical_id] = PhysicalNode(physical_id)
        node = existing or StateNode(state_id, physical_id)
        if teleportation_weight is not None:
            node.teleportation_weight = self._check_weight(teleportation_weight,
                                                           f"teleportation weight of state {state_id}")
        if flow is not None:
            node.flow = self._check_weight(flow, f"flow of state {state_id}")
        self._state_nodes[state_id] = node
        return self

    def set_meta_data(self, physical_id: int, category: int) -> 'NetworkModel':
        """Attach one integer meta-data category to a physical node."""
        physical_id = self._check_id(physical_id, "node id")
        self._meta_data[physical_id] = int(category)
        return self

    def set_node_flow(self, node_id: int, flow: float) -> 'NetworkModel':
        """Set precomputed flow on a state node, or on a physical node in first-order networks."""
        node_id = self._check_id(node_id, "node id")
        if node_id in self._state_nodes:
            self._state_nodes[node_id].flow = self._check_weight(flow, f"flow of state {node_id}")
        else:
            self.add_node(node_id, flow=flow)
        return self

    @property
    def bipartite_start_id(self) -> Optional[int]:
        return self._bipartite_start_id

    @bipartite_start_id.setter
    def bipartite_start_id(self, start_id: Optional[int]):
        self._bipartite_start_id = None if start_id is None else self._check_id(start_id, "bipartite start id")

    # ========================================================================
    # Links
    # ========================================================================

    def add_link(self, source: int, target: int, weight: float = 1.0, flow: Optional[float] = None) -> 'NetworkModel':
        """
        Add a weighted link, accumulating weight on repeated pairs.

        Links below the weight threshold and self-links (unless included) are
        skipped, but their end nodes are still added to a first-order network.
        """
        source = self._check_id(source, "link source")
        target = self._check_id(target, "link target")
        weight = self._check_weight(weight, f"weight of link ({source}, {target})")
        if self._layer_node_to_state:
            raise InputError("Cannot mix plain links with multilayer links, use add_multilayer_link")

        if not self.have_memory:
            for node_id in (source, target):
                if node_id not in self._physical_nodes:
                    self._physical_nodes[node_id] = PhysicalNode(node_id)

        if source == target and not self.include_self_links:
            self.num_self_links_skipped += 1
            return self
        if weight < self.weight_threshold:
            self.num_links_below_threshold += 1
            return self

        self._accumulate_link(source, target, weight, flow)
        return self

    def add_links(self, links: Iterable) -> 'NetworkModel':
        """Add links given as (source, target) or (source, target, weight) tuples."""
        for link in links:
            self.add_link(*link)
        return self

    def remove_link(self, source: int, target: int) -> 'NetworkModel':
        """Remove a link between runs. Raises InputError if the link does not exist."""
        key = (source, target)
        if key not in self._links:
            raise InputError(f"Cannot remove link ({source}, {target}): no such link")
        del self._links[key]
        return self

    def _accumulate_link(self, source, target, weight, flow=None):
        link = self._links.get((source, target))
        if link is None:
            self._links[(source, target)] = Link(source, target, weight, flow)
        else:
            link.weight += weight
            if flow is not None:
                link.flow = (link.flow or 0.0) + flow

    # ========================================================================
    # Multilayer links
    # ========================================================================

    def add_multilayer_intra_link(self, layer_id: int, source: int, target: int,
                                  weight: float = 1.0) -> 'NetworkModel':
        """Link two physical nodes within one layer."""
        self._begin_multilayer()
        layer_id = self._check_id(layer_id, "layer id")
        source = self._check_id(source, "link source")
        target = self._check_id(target, "link target")
        weight = self._check_weight(weight, f"weight of intra-layer link ({source}, {target})")
        if source == target and not self.include_self_links:
            self.num_self_links_skipped += 1
            return self
        if weight < self.weight_threshold:
            self.num_links_below_threshold += 1
            return self
        self._state_id(layer_id, source)
        self._state_id(layer_id, target)
        key = (layer_id, source, target)
        self._intra_links[key] = self._intra_links.get(key, 0.0) + weight
        return self

    def add_multilayer_inter_link(self, source_layer_id: int, node_id: int, target_layer_id: int,
                                  weight: float = 1.0) -> 'NetworkModel':
        """Link a physical node in one layer to itself in another layer."""
        self._begin_multilayer()
        weight = self._check_weight(weight, f"weight of inter-layer link ({source_layer_id}, {node_id}, {target_layer_id})")
        if source_layer_id == target_layer_id:
            raise InputError(f"Inter-layer link on node {node_id} must connect two different layers")
        self._state_id(source_layer_id, node_id)
        key = (source_layer_id, node_id, target_layer_id)
        self._inter_links[key] = self._inter_links.get(key, 0.0) + weight
        return self

    def add_multilayer_link(self, source: Tuple[int, int], target: Tuple[int, int],
                            weight: float = 1.0) -> 'NetworkModel':
        """
        Add a link between two (layer_id, node_id) pairs.

        Pairs in the same layer become intra-layer links, pairs on the same node
        become inter-layer links, anything else is stored as a direct state link.
        """
        (layer1, node1), (layer2, node2) = source, target
        if layer1 == layer2:
            return self.add_multilayer_intra_link(layer1, node1, node2, weight)
        if node1 == node2:
            return self.add_multilayer_inter_link(layer1, node1, layer2, weight)
        self._begin_multilayer()
        weight = self._check_weight(weight, f"weight of multilayer link {source} -> {target}")
        if weight >= self.weight_threshold:
            self._accumulate_link(self._state_id(layer1, node1), self._state_id(layer2, node2), weight)
        return self

    def _begin_multilayer(self):
        if self._state_nodes and not self._layer_node_to_state:
            raise InputError("Cannot mix explicit state nodes with multilayer links")
        if self._links and not self._layer_node_to_state:
            raise InputError("Cannot mix plain links with multilayer links")

    def _state_id(self, layer_id: int, node_id: int) -> int:
        """State id of (layer, node), created on first use."""
        key = (layer_id, node_id)
        state_id = self._layer_node_to_state.get(key)
        if state_id is None:
            state_id = len(self._layer_node_to_state)
            self._layer_node_to_state[key] = state_id
            self._state_nodes[state_id] = StateNode(state_id, node_id, layer_id)
            if node_id not in self._physical_nodes:
                self._physical_nodes[node_id] = PhysicalNode(node_id)
        return state_id

    # ========================================================================
    # Read access
    # ========================================================================

    @property
    def have_memory(self) -> bool:
        """True for state networks, including expanded multilayer networks."""
        return len(self._state_nodes) > 0

    @property
    def is_multilayer(self) -> bool:
        return len(self._layer_node_to_state) > 0

    @property
    def is_bipartite(self) -> bool:
        return self._bipartite_start_id is not None

    @property
    def have_meta_data(self) -> bool:
        return len(self._meta_data) > 0

    @property
    def physical_nodes(self) -> Dict[int, PhysicalNode]:
        return self._physical_nodes

    @property
    def state_nodes(self) -> Dict[int, StateNode]:
        return self._state_nodes

    @property
    def links(self) -> List[Link]:
        return list(self._links.values())

    @property
    def num_physical_nodes(self) -> int:
        return len(self._physical_nodes)

    @property
    def num_nodes(self) -> int:
        """Number of state nodes, equal to the number of physical nodes in first-order networks."""
        return len(self._state_nodes) if self.have_memory else len(self._physical_nodes)

    @property
    def num_links(self) -> int:
        return len(self._links) + len(self._intra_links) + len(self._inter_links)

    @property
    def sum_link_weight(self) -> float:
        return (sum(link.weight for link in self._links.values()) +
                sum(self._intra_links.values()) + sum(self._inter_links.values()))

    def node_ids(self) -> List[int]:
        """State ids in insertion order (physical ids for first-order networks)."""
        return list(self._state_nodes) if self.have_memory else list(self._physical_nodes)

    def physical_id_of(self, state_id: int) -> int:
        return self._state_nodes[state_id].physical_id if self.have_memory else state_id

    def layer_id_of(self, state_id: int) -> Optional[int]:
        node = self._state_nodes.get(state_id)
        return None if node is None else node.layer_id

    def name_of(self, node_id: int):
        node = self._physical_nodes.get(self.physical_id_of(node_id))
        return None if node is None else node.name

    def meta_data_of(self, state_id: int) -> Optional[int]:
        return self._meta_data.get(self.physical_id_of(state_id))

    def teleportation_weight_of(self, state_id: int) -> float:
        node = self._state_nodes[state_id] if self.have_memory else self._physical_nodes[state_id]
        return 1.0 if node.teleportation_weight is None else node.teleportation_weight

    def node_flow_of(self, state_id: int) -> Optional[float]:
        node = self._state_nodes[state_id] if self.have_memory else self._physical_nodes[state_id]
        return node.flow

    def is_feature_node(self, state_id: int) -> bool:
        return self.is_bipartite and self.physical_id_of(state_id) >= self._bipartite_start_id

    def out_links(self, state_id: int) -> List[Link]:
        return [link for link in self._links.values() if link.source == state_id]

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, config: dict) -> 'NetworkModel':
        """
        Check the input contract against a configuration before optimization.

        Raises:
            InputError: Empty network, dangling state bindings, unknown bipartite start id
                or missing meta data
            ConfigurationError: Options that the network cannot satisfy
        """
        if self.num_nodes == 0:
            raise InputError("Network is empty, add nodes or links before running")

        if self.have_memory:
            for link in self._links.values():
                for state_id in (link.source, link.target):
                    if state_id not in self._state_nodes:
                        raise InputError(f"Link ({link.source}, {link.target}) references state node "
                                         f"{state_id} without a physical node binding")

        if self.is_bipartite and self._bipartite_start_id not in self._physical_nodes:
            raise InputError(f"Bipartite start id {self._bipartite_start_id} is not a node id")

        if self.have_meta_data:
            for state_id in self.node_ids():
                if self.meta_data_of(state_id) is None:
                    raise InputError(f"Node {self.physical_id_of(state_id)} is missing meta data")

        multilayer = config['multilayer']
        relaxing = (float(multilayer['relax_rate']) >= 0 or multilayer['relax_by_jsd'] or
                    any(multilayer[k] >= 0 for k in ('relax_limit', 'relax_limit_up', 'relax_limit_down')))
        if relaxing and not self.is_multilayer:
            raise ConfigurationError("multilayer relaxation requires multilayer links", option='multilayer.relax_rate')

        if config['flow']['flow_model'] == 'precomputed':
            missing = [n for n in self.node_ids() if self.node_flow_of(n) is None]
            if missing:
                raise ConfigurationError(f"flow model 'precomputed' needs flow on every node, "
                                         f"missing on node {missing[0]}", option='flow.flow_model')
        return self

    # ========================================================================
    # Link generation
    # ========================================================================

    def flow_links(self, config: dict, undirected: bool) -> List[Link]:
        """
        Links used for flow calculation, with multilayer input expanded into state links.

        Args:
            config: Validated configuration
            undirected: Treat intra-layer links as undirected when expanding layers
        """
        if not self.is_multilayer:
            return self.links
        multilayer = config['multilayer']
        relax_rate = float(multilayer['relax_rate'])
        if relax_rate < 0 and self._intra_links and not self._inter_links:
            logger.info(f"No inter-layer links, relaxing layers with rate {DEFAULT_RELAX_RATE}")
            relax_rate = DEFAULT_RELAX_RATE
        links = self._generate_multilayer_links(relax_rate,
                                                multilayer['relax_limit'],
                                                multilayer['relax_limit_up'],
                                                multilayer['relax_limit_down'],
                                                multilayer['relax_by_jsd'],
                                                undirected)
        for link in self._links.values():
            links[(link.source, link.target)] += link.weight
        return [Link(s, t, w) for (s, t), w in links.items() if w > 0]

    def _generate_multilayer_links(self, relax_rate, relax_limit, limit_up, limit_down, by_jsd, undirected):
        out_links = defaultdict(lambda: defaultdict(float))
        for (layer, source, target), weight in self._intra_links.items():
            out_links[(layer, source)][target] += weight
            if undirected and source != target:
                out_links[(layer, target)][source] += weight
        strength = {key: sum(targets.values()) for key, targets in out_links.items()}

        links = defaultdict(float)
        if relax_rate < 0:
            for (layer, source), targets in out_links.items():
                for target, weight in targets.items():
                    links[(self._state_id(layer, source), self._state_id(layer, target))] += weight
            for (layer1, node, layer2), weight in self._inter_links.items():
                targets = out_links.get((layer2, node))
                if not targets:
                    logger.debug(f"Inter-layer link from layer {layer1} ignored, node {node} "
                                 f"has no out-links in layer {layer2}")
                    continue
                for target, w in targets.items():
                    links[(self._state_id(layer1, node), self._state_id(layer2, target))] += \
                        weight * w / strength[(layer2, node)]
            return links

        if self._inter_links:
            logger.warning("Explicit inter-layer links are replaced by relaxed layer transitions")

        layers_of_node = defaultdict(list)
        for layer, node in sorted(out_links):
            layers_of_node[node].append(layer)

        def allowed(alpha, beta):
            distance = beta - alpha
            if relax_limit >= 0 and abs(distance) > relax_limit:
                return False
            if distance > 0 and limit_up >= 0 and distance > limit_up:
                return False
            if distance < 0 and limit_down >= 0 and -distance > limit_down:
                return False
            return True

        states = OrderedDict()
        for layer, source, target in self._intra_links:
            states[(layer, source)] = None
            states[(layer, target)] = None

        for alpha, node in states:
            s_alpha = strength.get((alpha, node), 0.0)
            source_state = self._state_id(alpha, node)
            for target, weight in out_links.get((alpha, node), {}).items():
                links[(source_state, self._state_id(alpha, target))] += (1 - relax_rate) * weight / s_alpha
            layers = [beta for beta in layers_of_node[node] if allowed(alpha, beta)]
            # Dangling states have no own out-links to compare against
            layer_weights = np.array([self._layer_weight(out_links, strength, node, alpha, beta,
                                                         by_jsd and s_alpha > 0)
                                      for beta in layers])
            total = layer_weights.sum()
            if total <= 0:
                continue
            for beta, layer_weight in zip(layers, layer_weights):
                s_beta = strength[(beta, node)]
                for target, weight in out_links[(beta, node)].items():
                    links[(source_state, self._state_id(beta, target))] += \
                        relax_rate * (layer_weight / total) * weight / s_beta
        return links

    @staticmethod
    def _layer_weight(out_links, strength, node, alpha, beta, by_jsd):
        """Weight of relaxing from layer alpha to layer beta at a node."""
        s_beta = strength[(beta, node)]
        if not by_jsd or alpha == beta:
            return s_beta
        targets = sorted(set(out_links[(alpha, node)]) | set(out_links[(beta, node)]))
        p = [out_links[(alpha, node)].get(t, 0.0) for t in targets]
        q = [out_links[(beta, node)].get(t, 0.0) for t in targets]
        similarity = 1.0 - jensen_shannon_divergence(p, q) / math.log(2)
        return s_beta * max(similarity, 0.0)

    # ========================================================================
    # Interop
    # ========================================================================

    @classmethod
    def from_networkx(cls, graph: nx.Graph, weight: str = "weight", **kwargs) -> 'NetworkModel':
        """
        Build a first-order network from a networkx graph.

        Integer node labels are used as ids; other labels are enumerated in graph
        order and kept as node names. Directed graphs mark the input as directed.
        """
        kwargs.setdefault('directed', graph.is_directed())
        network = cls(**kwargs)
        integer_labels = all(isinstance(n, (int, np.integer)) and n >= 0 for n in graph.nodes)
        ids = {n: (int(n) if integer_labels else i) for i, n in enumerate(graph.nodes)}
        for node, node_id in ids.items():
            network.add_node(node_id, name=node)
        for source, target, data in graph.edges(data=True):
            network.add_link(ids[source], ids[target], data.get(weight, 1.0))
        return network

    # ========================================================================
    # Helpers
    # ========================================================================

    @staticmethod
    def _check_id(value, what: str) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 0:
            raise InputError(f"Invalid {what} {value!r}: expected a non-negative integer")
        return int(value)

    @staticmethod
    def _check_weight(value, what: str) -> float:
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise InputError(f"Invalid {what}: expected a number, got {value!r}")
        if not math.isfinite(value) or value < 0:
            raise InputError(f"Invalid {what}: must be finite and non-negative, got {value}")
        return value

    def __repr__(self):
        kind = "multilayer" if self.is_multilayer else "state" if self.have_memory else "first-order"
        return f"NetworkModel({kind}, nodes={self.num_nodes}, links={self.num_links})"
