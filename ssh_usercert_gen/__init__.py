"""Short-lived SSH user certificates for authenticated users."""

__version__ = "0.1.0"
