"""Invoice relay operator CLI."""

__version__ = "0.4.0"
