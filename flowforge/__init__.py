"""Flowforge - visual workflow execution engine.

Runs graphs of scriptable nodes (basic, HTTP, condition, loop, storage,
database, webhook) with per-run status views and trigger sources.
"""

__version__ = "0.1.0"
