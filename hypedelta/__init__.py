"""hypedelta: track AI research discourse and the gap between lab and critic sentiment."""

__version__ = "0.1.0"
