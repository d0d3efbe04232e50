"""Find chat client accounts, recover keys, decrypt local databases and query their contents."""

__version__ = "0.1.0"