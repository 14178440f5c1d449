"""
Flow calculation for flowmap networks.

Turns link weights into the stationary flow of a random walker: one flow value
per (state) node summing to 1, and one flow value per link used for enter/exit
accounting. The flow model is a closed set selected by FlowModel.
"""

import logging
import numpy as np
from enum import Enum
from typing import NamedTuple, List, Optional

from .exceptions import ConfigurationError, NumericalError, InputError
from .utils import entropy


logger = logging.getLogger(__name__)

MIN_POWER_ITERATIONS = 50
MAX_POWER_ITERATIONS = 200
POWER_ITERATION_TOLERANCE = 1e-15
# Residual above this after the iteration budget means the walk has not converged at all
NON_CONVERGENCE_TOLERANCE = 1e-6


# ============================================================================
# Flow models
# ============================================================================

class FlowModel(Enum):
    """Random walk models for turning link weights into flow."""
    UNDIRECTED = "undirected"
    DIRECTED = "directed"
    UNDIRDIR = "undirdir"
    OUTDIRDIR = "outdirdir"
    RAWDIR = "rawdir"
    PRECOMPUTED = "precomputed"

    @property
    def is_undirected_flow(self) -> bool:
        """Node flow counts both link directions."""
        return self in (FlowModel.UNDIRECTED, FlowModel.UNDIRDIR, FlowModel.OUTDIRDIR)

    @property
    def is_undirected_clustering(self) -> bool:
        """Link flow is split in half over both directions when computing enter/exit flow."""
        return self is FlowModel.UNDIRECTED


class FlowResult(NamedTuple):
    """Flow on a network, aligned with node_ids and with the link arrays."""
    node_ids: List[int]
    node_flow: np.ndarray
    sources: np.ndarray
    targets: np.ndarray
    link_flow: np.ndarray
    flow_model: FlowModel
    entropy_rate: float

    @property
    def undirected_clustering(self) -> bool:
        return self.flow_model.is_undirected_clustering

    def tree_edges(self):
        """Edges for the clustering engine as (source index, target index, flow), without self-links."""
        for s, t, f in zip(self.sources.tolist(), self.targets.tolist(), self.link_flow.tolist()):
            if s != t:
                yield s, t, f


def resolve_flow_model(network, config: dict) -> FlowModel:
    """Pick the flow model from configuration and input directedness."""
    flow_model = FlowModel(config['flow']['flow_model'])
    if flow_model is FlowModel.UNDIRECTED:
        if config['flow']['directed']:
            flow_model = FlowModel.DIRECTED
        elif network.is_directed_input:
            logger.info("Directed input, switching flow model to 'directed'")
            flow_model = FlowModel.DIRECTED
        elif network.is_multilayer:
            # Layer transitions make the expanded state network directed
            logger.info("Multilayer input, expanding undirected layers to a directed state network")
            flow_model = FlowModel.DIRECTED
    return flow_model


# ============================================================================
# Flow calculation
# ============================================================================

def calculate_flow(network, config: dict) -> FlowResult:
    """
    Calculate node and link flow of a network.

    Args:
        network: NetworkModel, validated against config
        config: Complete configuration dict

    Returns:
        FlowResult with node flow summing to 1 and link flow scaled by markov time

    Raises:
        ConfigurationError: Precomputed flow missing or summing to zero
        NumericalError: Power iteration did not converge or produced non-finite flow
    """
    flow_config = config['flow']
    flow_model = resolve_flow_model(network, config)
    undirected_layers = FlowModel(flow_config['flow_model']) is FlowModel.UNDIRECTED and not flow_config['directed']
    links = network.flow_links(config, undirected=undirected_layers)

    node_ids = network.node_ids()
    if not node_ids:
        raise InputError("Network is empty, add nodes or links before running")
    index_of = {node_id: i for i, node_id in enumerate(node_ids)}
    num_nodes = len(node_ids)

    sources = np.fromiter((index_of[link.source] for link in links), dtype=np.int64, count=len(links))
    targets = np.fromiter((index_of[link.target] for link in links), dtype=np.int64, count=len(links))
    weights = np.fromiter((link.weight for link in links), dtype=np.float64, count=len(links))
    teleport_weights = np.array([network.teleportation_weight_of(n) for n in node_ids], dtype=np.float64)

    logger.debug(f"Calculating flow using flow model '{flow_model.value}' on {num_nodes} nodes "
                 f"and {len(links)} links")

    sum_link_weight = weights.sum()
    non_self = sources != targets

    if flow_model is FlowModel.PRECOMPUTED:
        node_flow, link_flow = _precomputed_flow(network, node_ids, links, sum_link_weight)
    elif sum_link_weight <= 0:
        # No link weight to walk on, spread flow by node weight
        logger.info("No link weight in network, using node weights as flow")
        node_flow = _normalized(teleport_weights, "node weights")
        link_flow = np.zeros(len(links))
    else:
        undirected_norm = 2 * sum_link_weight - weights[~non_self].sum()
        node_flow = np.zeros(num_nodes)
        np.add.at(node_flow, sources, weights / undirected_norm)
        if flow_model is not FlowModel.OUTDIRDIR:
            np.add.at(node_flow, targets[non_self], weights[non_self] / undirected_norm)

        out_weight = np.zeros(num_nodes)
        np.add.at(out_weight, sources, weights)
        if flow_model.is_undirected_flow:
            np.add.at(out_weight, targets[non_self], weights[non_self])

        if flow_model is FlowModel.UNDIRECTED:
            link_flow = weights / undirected_norm
            link_flow[non_self] *= 2
        elif flow_model in (FlowModel.UNDIRDIR, FlowModel.OUTDIRDIR):
            node_flow, link_flow = _dirdir_flow(node_flow, sources, targets, weights, out_weight)
        elif flow_model is FlowModel.RAWDIR:
            link_flow = weights / sum_link_weight
            node_flow = np.zeros(num_nodes)
            np.add.at(node_flow, targets, link_flow)
            node_flow = _normalized(node_flow, "node flow")
        else:
            node_flow, link_flow = _directed_flow(node_flow, sources, targets, weights, out_weight,
                                                  teleport_weights, sum_link_weight, flow_config)

    if network.is_bipartite and not flow_config['skip_adjust_bipartite_flow']:
        is_feature = np.array([network.is_feature_node(n) for n in node_ids], dtype=bool)
        node_flow, link_flow = _adjust_bipartite_flow(node_flow, link_flow, sources, targets, is_feature)

    if flow_config['use_node_weights_as_flow']:
        node_flow = _normalized(teleport_weights, "node weights")

    if not (np.all(np.isfinite(node_flow)) and np.all(np.isfinite(link_flow))):
        raise NumericalError(f"Flow model '{flow_model.value}' produced non-finite flow")

    entropy_rate = _entropy_rate(node_flow, sources, targets, link_flow, flow_model)
    link_flow = link_flow * float(flow_config['markov_time'])

    return FlowResult(node_ids, node_flow, sources, targets, link_flow, flow_model, entropy_rate)


def _normalized(values: np.ndarray, what: str) -> np.ndarray:
    total = values.sum()
    if total <= 0:
        raise NumericalError(f"Cannot normalize {what}, sum is {total}")
    return values / total


def _transition_probabilities(weights, source_out_weight):
    return np.divide(weights, source_out_weight, out=np.zeros_like(weights), where=source_out_weight > 0)


def _dirdir_flow(steady_state, sources, targets, weights, out_weight):
    """Undirected steady state followed by one directed step."""
    transition = _transition_probabilities(weights, out_weight[sources])
    node_flow = np.zeros_like(steady_state)
    np.add.at(node_flow, targets, steady_state[sources] * transition)
    sum_node_flow = node_flow.sum()
    link_flow = transition * steady_state[sources] / sum_node_flow
    return node_flow / sum_node_flow, link_flow


def _directed_flow(initial_flow, sources, targets, weights, out_weight, teleport_weights,
                   sum_link_weight, flow_config):
    """PageRank power iteration with teleportation to nodes or links."""
    alpha = float(flow_config['teleportation_probability'])
    beta = 1.0 - alpha
    recorded = flow_config['recorded_teleportation']
    num_nodes = len(initial_flow)

    if flow_config['teleport_to_nodes']:
        teleport = _normalized(teleport_weights, "teleportation weights")
    else:
        teleport = np.zeros(num_nodes)
        np.add.at(teleport, targets if recorded else sources, weights / sum_link_weight)

    transition = _transition_probabilities(weights, out_weight[sources])
    dangling = out_weight == 0

    node_flow = initial_flow.copy()
    step_flow = node_flow
    dangling_rank = 0.0
    error = np.inf
    iterations = 0
    while iterations < MAX_POWER_ITERATIONS and (error > POWER_ITERATION_TOLERANCE or iterations < MIN_POWER_ITERATIONS):
        dangling_rank = node_flow[dangling].sum()
        step_flow = (alpha + beta * dangling_rank) * teleport
        np.add.at(step_flow, targets, beta * transition * node_flow[sources])
        error = np.abs(step_flow - node_flow).sum()
        node_flow = step_flow
        flow_sum = node_flow.sum()
        if abs(flow_sum - 1.0) > 1e-10:
            node_flow = node_flow / flow_sum
        iterations += 1

    if not np.isfinite(error) or error > NON_CONVERGENCE_TOLERANCE:
        raise NumericalError(f"PageRank did not converge in {iterations} iterations "
                             f"(residual {error:.3g}, teleportation_probability {alpha})")
    if error > POWER_ITERATION_TOLERANCE:
        logger.debug(f"PageRank stopped after {iterations} iterations with residual {error:.3g}")
    else:
        logger.debug(f"PageRank converged in {iterations} iterations")

    sum_node_rank = 1.0
    if not recorded:
        # One last step without teleportation
        sum_node_rank = 1.0 - dangling_rank
        node_flow = np.zeros(num_nodes)
        np.add.at(node_flow, targets, transition * step_flow[sources] / sum_node_rank)
        beta = 1.0

    link_flow = transition * beta * step_flow[sources] / sum_node_rank
    return node_flow, link_flow


def _precomputed_flow(network, node_ids, links, sum_link_weight):
    node_flow = np.array([network.node_flow_of(n) for n in node_ids], dtype=np.float64)
    total = node_flow.sum()
    if total <= 0:
        raise ConfigurationError("flow model 'precomputed' needs positive node flow", option='flow.flow_model')
    if abs(total - 1.0) > 1e-10:
        logger.warning(f"Precomputed node flow sums to {total}, normalizing")
        node_flow = node_flow / total
    link_flow = np.array([link.flow if link.flow is not None else
                          (link.weight / sum_link_weight if sum_link_weight > 0 else 0.0)
                          for link in links], dtype=np.float64)
    return node_flow, link_flow


def _adjust_bipartite_flow(node_flow, link_flow, sources, targets, is_feature):
    """Move flow from feature nodes onto the ordinary nodes they link to."""
    node_flow = node_flow.copy()
    source_is_feature = is_feature[sources]
    ordinary = np.where(source_is_feature, targets, sources)
    feature = np.where(source_is_feature, sources, targets)
    np.add.at(node_flow, ordinary, link_flow)
    node_flow[feature] = 0.0
    # Markov time 2 on the full network is markov time 1 between ordinary nodes
    return _normalized(node_flow, "bipartite node flow"), link_flow * 2


def _entropy_rate(node_flow, sources, targets, link_flow, flow_model) -> float:
    """Average per-step entropy of the walk, weighted by node flow."""
    out_flows = [[] for _ in range(len(node_flow))]
    for s, t, f in zip(sources.tolist(), targets.tolist(), link_flow.tolist()):
        out_flows[s].append(f)
        if flow_model.is_undirected_clustering and s != t:
            out_flows[t].append(f)
    return float(sum(flow * entropy(flows) for flow, flows in zip(node_flow.tolist(), out_flows) if flows))
