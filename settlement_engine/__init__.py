"""Sports prediction market settlement engine."""

__version__ = "1.0.0"
