"""imagegate: build a container image, scan it, publish it only if it passes."""

__version__ = "0.1.0"
