"""Terminal assistant that manages tasks and coding sessions through a tool-calling model."""

__version__ = "0.1.0"
