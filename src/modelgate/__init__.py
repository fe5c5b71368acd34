"""modelgate: capability-aware adapter for hosted chat completion APIs."""

__version__ = "0.1.0"
