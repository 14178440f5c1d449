"""
General purpose utility functions for the flowmap package.

This module contains small, side-effect-free helpers used across the codebase:
1. Information-theoretic primitives (plogp, entropy, Jensen-Shannon divergence)
2. Logging and validation utilities
3. Pickle I/O for saving and restoring driver state
"""

import math
import pickle
import logging
import numpy as np
from scipy.special import rel_entr

from .exceptions import ConfigurationError


def plogp(p: float) -> float:
    """Return p * log2(p), with 0 * log2(0) defined as 0."""
    return p * math.log2(p) if p > 0.0 else 0.0


def entropy(p):
    """Function to compute the Shannon entropy in bits of a (not necessarily normalized) vector"""
    p = np.asarray(p, dtype=np.float64)
    total = p.sum()
    if total <= 0:
        return 0.0
    p = p[p > 0] / total
    return float(-np.sum(p * np.log2(p)))


def jensen_shannon_divergence(p, q):
    """
    Compute the Jensen-Shannon divergence between two probability distributions using rel_entr.

    Args:
        p, q (array-like): Probability distributions (normalized here)

    Returns:
        float: Jensen-Shannon divergence in nats, bounded by log(2)
    """
    p = np.asarray(p, dtype=np.float64)
    q = np.asarray(q, dtype=np.float64)

    if not np.any(p):
        raise ValueError("Input p must have nonzero sum.")
    if not np.any(q):
        raise ValueError("Input q must have nonzero sum.")

    # Normalize
    p = p / np.sum(p)
    q = q / np.sum(q)

    m = 0.5 * (p + q)
    return 0.5 * np.sum(rel_entr(p, m)) + 0.5 * np.sum(rel_entr(q, m))


def log_print(message: str, level: str = "info", logger: logging.Logger = None, also_print: bool = False):
    """
    Logs and optionally prints a message.

    Parameters:
        message (str): The message to log/print.
        level (str): Logging level: 'debug', 'info', 'warning', 'error', or 'critical'.
        logger (logging.Logger): Logger instance. If None, uses the package logger.
        also_print (bool): Whether to also print to stdout.
    """
    if logger is None:
        logger = logging.getLogger("flowmap")

    log_func = getattr(logger, level.lower(), logger.info)
    log_func(message)

    if also_print:
        print(message)


def validate_probability(value, option: str) -> float:
    """Raise ConfigurationError unless value is a number in [0, 1]."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"expected a number, got {value!r}", option=option)
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"must be in [0, 1], got {value}", option=option)
    return value


def validate_non_negative(value, option: str) -> float:
    """Raise ConfigurationError unless value is a finite number >= 0."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"expected a number, got {value!r}", option=option)
    if not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"must be a finite non-negative number, got {value}", option=option)
    return value


def save_pickle(obj, filepath):
    """Save object to pickle file."""
    with open(filepath, 'wb') as f:
        pickle.dump(obj, f)


def load_pickle(filepath):
    """Load object from pickle file."""
    with open(filepath, 'rb') as f:
        return pickle.load(f)
