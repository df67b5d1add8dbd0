"""Economic calendar alerts: dedup, grouping and per-recipient notification scheduling."""

__version__ = "1.0.0"
