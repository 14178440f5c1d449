"""
Configuration layer for flowmap.

Defaults live in config.yaml next to this module. User overrides, given either as
a nested dict or as a path to a YAML file, are deep-merged over the defaults and
validated before any optimization starts.
"""

import copy
import logging
import yaml
from pathlib import Path
from typing import Optional, Union, Dict, Any

from .exceptions import ConfigurationError
from .utils import validate_probability, validate_non_negative
from ._flow_driver import FlowModel

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

logger = logging.getLogger(__name__)


def load_default_config() -> dict:
    """Load default configuration from YAML file."""
    try:
        with open(DEFAULT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(f"Config file not found at {DEFAULT_CONFIG_PATH}")
        raise
    except yaml.YAMLError as e:
        logger.error(f"Error parsing config file: {e}")
        raise


def load_config(overrides: Optional[Union[str, Path, Dict[str, Any]]] = None) -> dict:
    """
    Build a complete, validated configuration.

    Args:
        overrides: Nested dict of options, or path to a YAML file with the same layout

    Returns:
        New configuration dict with every section and key of the defaults
    """
    config = load_default_config()
    if overrides is None:
        return validate_config(config)

    if isinstance(overrides, (str, Path)):
        try:
            with open(overrides, 'r', encoding='utf-8') as f:
                overrides = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"could not parse YAML file {overrides}: {e}")

    if not isinstance(overrides, dict):
        raise ConfigurationError(f"expected a dict of sections, got {type(overrides).__name__}")

    return validate_config(merge_config(config, overrides))


def merge_config(base: dict, overrides: dict) -> dict:
    """Deep-merge overrides into a copy of base, rejecting unknown sections and keys."""
    merged = copy.deepcopy(base)
    for section, values in overrides.items():
        if section not in merged:
            raise ConfigurationError("unknown configuration section", option=section)
        if not isinstance(values, dict):
            raise ConfigurationError(f"section must be a mapping, got {values!r}", option=section)
        for key, value in values.items():
            if key not in merged[section]:
                raise ConfigurationError("unknown option", option=f"{section}.{key}")
            merged[section][key] = value
    return merged


def validate_config(config: dict) -> dict:
    """Check option ranges and combinations. Returns the config for chaining."""
    flow = config['flow']
    try:
        FlowModel(flow['flow_model'])
    except ValueError:
        choices = ", ".join(m.value for m in FlowModel)
        raise ConfigurationError(f"must be one of {choices}, got {flow['flow_model']!r}",
                                 option='flow.flow_model')
    if flow['directed'] and flow['flow_model'] not in (FlowModel.UNDIRECTED.value, FlowModel.DIRECTED.value):
        raise ConfigurationError(f"contradicts flow.flow_model '{flow['flow_model']}'", option='flow.directed')

    validate_probability(flow['teleportation_probability'], 'flow.teleportation_probability')
    if validate_non_negative(flow['markov_time'], 'flow.markov_time') == 0:
        raise ConfigurationError("must be positive", option='flow.markov_time')

    validate_non_negative(config['network']['weight_threshold'], 'network.weight_threshold')

    multilayer = config['multilayer']
    if float(multilayer['relax_rate']) > 1.0:
        raise ConfigurationError(f"must be at most 1, got {multilayer['relax_rate']}",
                                 option='multilayer.relax_rate')
    for key in ('relax_limit', 'relax_limit_up', 'relax_limit_down'):
        if not isinstance(multilayer[key], int):
            raise ConfigurationError(f"expected an integer, got {multilayer[key]!r}", option=f'multilayer.{key}')

    validate_non_negative(config['meta_data']['meta_data_rate'], 'meta_data.meta_data_rate')

    algorithm = config['algorithm']
    for key in ('num_trials', 'num_workers'):
        if not isinstance(algorithm[key], int) or algorithm[key] < 1:
            raise ConfigurationError(f"must be a positive integer, got {algorithm[key]!r}",
                                     option=f'algorithm.{key}')
    for key in ('seed', 'core_loop_limit', 'level_aggregation_limit', 'tune_iteration_limit',
                'fast_hierarchical_solution'):
        if not isinstance(algorithm[key], int) or algorithm[key] < 0:
            raise ConfigurationError(f"must be a non-negative integer, got {algorithm[key]!r}",
                                     option=f'algorithm.{key}')
    for key in ('core_loop_codelength_threshold', 'tune_iteration_relative_threshold'):
        validate_non_negative(algorithm[key], f'algorithm.{key}')

    level = str(config['logging']['level']).upper()
    if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
        raise ConfigurationError(f"unknown logging level {level!r}", option='logging.level')
    return config
