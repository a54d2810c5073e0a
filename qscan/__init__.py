"""
qscan: Qualys QScanner wrapper for Apptainer/Singularity containers

Resolves SIF images, running containers and plain directories into a
filesystem root, runs the qscanner engine against it and normalizes the
outcome into ScanResult records.
"""

__version__ = "1.0.0"
__author__ = "qscan Contributors"
