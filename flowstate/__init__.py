"""Flowstate: workflow graphs, data mapping and flow execution for marketing automation."""

__version__ = "1.0.0"
