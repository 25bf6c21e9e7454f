"""Package version; setup.py carries the same number."""

from .main import ghostlog

__version__ = ghostlog.ENGINE_VERSION

__all__ = ["__version__"]
