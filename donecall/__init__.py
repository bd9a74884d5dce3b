"""donecall — know when your AI chat has finished answering."""

__version__ = "0.1.0"
