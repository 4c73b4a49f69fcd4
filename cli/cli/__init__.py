"""Command-line interface for the fund settlement service."""

__version__ = "0.1.0"
