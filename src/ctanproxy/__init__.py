"""ctanproxy: CTAN package resolution and caching proxy."""

__version__ = "0.1.0"
