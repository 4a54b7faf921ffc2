"""Supply-Bot — procurement agents for small manufacturers."""

__version__ = "1.0.0"
