"""Loading, statistics, filtering and analysis of memory-tracking capture files."""

__version__ = "0.1.0"