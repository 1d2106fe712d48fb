"""Image upload with queued out-of-process analysis and polled status updates."""

__version__ = "0.1.0"
