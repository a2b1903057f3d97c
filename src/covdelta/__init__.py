"""covdelta: coverage deltas for pull requests, published as check runs."""

__version__ = "0.3.0"
