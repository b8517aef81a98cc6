"""WebEDT session recorder and stream relay."""

__version__ = "0.3.0"
