"""A small distributed file store: a master node spreads file chunks over data nodes."""

__version__ = "0.1.0"

__all__ = ["__version__"]