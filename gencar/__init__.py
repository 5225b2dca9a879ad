"""Build content-addressed CAR archives and piece commitments from file manifests."""

__version__ = "0.1.0"

__all__ = ["__version__"]
