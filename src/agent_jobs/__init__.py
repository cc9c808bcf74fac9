"""Job execution orchestrator for CLI builds and coding-agent turns."""

__version__ = "0.1.0"
