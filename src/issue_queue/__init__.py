"""Durable single-flight work queue for labelled tickets."""

__version__ = "0.3.0"
