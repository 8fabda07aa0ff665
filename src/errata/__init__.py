"""Agent orchestration and context compilation for collaborative fiction."""

__version__ = "0.1.0"

__all__ = ["__version__"]
