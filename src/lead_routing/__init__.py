"""Lead-to-agent matching and offer lifecycle engine."""

__version__ = "0.1.0"
