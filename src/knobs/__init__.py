"""
knobs - Trial lifecycle for black-box optimization experiments.

Patch a cluster with an assignment, wait for it to settle, run, measure.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
