"""
Management of the qscanner engine binary.
"""

from qscan.engine.cache import EngineCache, resolve_engine

__all__ = ['EngineCache', 'resolve_engine']
