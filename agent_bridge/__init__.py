"""agent-bridge: one canonical event stream over many coding-agent CLIs."""

__version__ = "0.1.0"
