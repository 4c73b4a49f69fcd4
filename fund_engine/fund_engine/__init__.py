"""Settlement engine for the pooled LSU fund."""

__version__ = "0.1.0"
