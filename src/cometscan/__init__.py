"""cometscan — Compound V3 (Comet) log indexer and activity aggregator."""

__version__ = "0.1.0"
