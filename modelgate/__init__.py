"""modelgate - one gateway in front of many model providers."""

__version__ = "0.3.0"

__all__ = ["__version__"]
