"""linecord: LINE ↔ Discord message bridge core."""

__version__ = "0.4.0"
