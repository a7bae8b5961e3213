"""
mmai

Battle inference core: bucketed graph flattening for a 165-hex battlefield and
temperature-controlled hierarchical action sampling.
"""

__version__ = "0.1.0"
