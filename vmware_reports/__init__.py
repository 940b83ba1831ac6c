"""Read-only VMware / vCloud Director administrative reports."""

__version__ = "0.1.0"
