"""todoagent - conversational todo manager.

A language model manages todo items by calling tools that run locally through
an embedded, in-process protocol server backed by a SQLite store.
"""

__version__ = "0.1.0"
