"""qscan command-line interface."""
