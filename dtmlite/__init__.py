"""Core of a distributed transaction manager: transactions, branch calls, processors and an admin server."""

__version__ = "0.1.0"

__all__ = ["errors", "util", "trans", "processors", "admin"]