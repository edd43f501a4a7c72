from .resolver import BLOCKING_STATES, DependencyGraph, blocking_dependencies, compute_order, is_ready

__all__ = ["DependencyGraph", "compute_order", "is_ready", "blocking_dependencies", "BLOCKING_STATES"]
