"""Signal Copilot - news signal extraction and portfolio impact scoring."""

__version__ = "0.1.0"
