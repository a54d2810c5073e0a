"""
Observability helpers for qscan.
"""

from qscan.observability.logging import setup_logging

__all__ = ['setup_logging']
