"""Remote database instance provisioning engine."""

__version__ = "0.1.0"
