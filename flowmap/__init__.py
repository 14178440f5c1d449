# flowmap/__init__.py
import importlib

__version__ = "1.0.0"

__all__ = [
    "core",
    "network",
    "map_equation",
    "optimizer",
    "aggregator",
    "hierarchy",
    "tree",
    "results",
    "config",
    "exceptions",
    "utils",
    "TrialDriver",
    "NetworkModel",
    "ResultTree",
    "__version__",
]

# Map attribute -> submodule for lazy loading
_lazy_submodules = {
    "core": "flowmap.core",
    "network": "flowmap.network",
    "map_equation": "flowmap.map_equation",
    "optimizer": "flowmap.optimizer",
    "aggregator": "flowmap.aggregator",
    "hierarchy": "flowmap.hierarchy",
    "tree": "flowmap.tree",
    "results": "flowmap.results",
    "config": "flowmap.config",
    "exceptions": "flowmap.exceptions",
    "utils": "flowmap.utils",
}

# Map attribute -> (submodule, name) for lazily loaded classes
_lazy_attributes = {
    "TrialDriver": ("flowmap.core", "TrialDriver"),
    "NetworkModel": ("flowmap.network", "NetworkModel"),
    "ResultTree": ("flowmap.results", "ResultTree"),
}

def __getattr__(name: str):
    if name in _lazy_submodules:
        module = importlib.import_module(_lazy_submodules[name])
        globals()[name] = module  # cache for future
        return module
    if name in _lazy_attributes:
        module_name, attribute = _lazy_attributes[name]
        value = getattr(importlib.import_module(module_name), attribute)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'flowmap' has no attribute '{name}'")

def __dir__():
    return sorted(list(globals().keys()) + list(_lazy_submodules.keys()) + list(_lazy_attributes.keys()))
