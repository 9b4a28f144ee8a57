"""Bootstrap orchestrator for highly-available k3s clusters."""

__version__ = "0.1.0"
