"""LevelDB-compatible storage backends, manifest records and sorted table files."""

__version__ = "0.1.0"