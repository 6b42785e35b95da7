"""Content merge engine for synchronizing two Strapi instances."""

__version__ = "0.4.0"
