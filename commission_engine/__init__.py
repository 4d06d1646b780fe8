"""Multi-level partner commission settlement engine."""

__version__ = "1.0.0"
