"""showel - PostgreSQL browse and edit client core."""

from showel.__about__ import __version__

__all__ = ["__version__"]
