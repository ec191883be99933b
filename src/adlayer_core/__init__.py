"""adlayer: resilient ad-platform data acquisition."""

__version__ = "0.1.0"
