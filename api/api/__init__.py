"""HTTP control plane for the fund settlement engine."""

__version__ = "0.1.0"
