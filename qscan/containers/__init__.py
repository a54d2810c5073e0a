"""
Container discovery and runtime adapters for qscan.

Provides Apptainer/Singularity process discovery and image extraction.
"""

from qscan.containers.discovery import ProcessDiscovery
from qscan.containers.runtime import ApptainerRuntime, ContainerRuntime, detect_runtime

__all__ = ['ProcessDiscovery', 'ApptainerRuntime', 'ContainerRuntime', 'detect_runtime']
