"""Group availability matching: stores, matching engine and event lifecycle."""

__version__ = "1.0.0"
