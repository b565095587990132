"""ralph-loop - supervise a coding agent through repeated iterations."""

__version__ = "0.1.0"
