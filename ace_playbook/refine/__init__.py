from .runner import RefinePass, RefineRunner, refine
from .scheduler import BackgroundOptimizer

__all__ = ["BackgroundOptimizer", "RefinePass", "RefineRunner", "refine"]
