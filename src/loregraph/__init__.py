"""loregraph - projection and retrieval engine for file-backed agent memory."""

__version__ = "0.3.0"
