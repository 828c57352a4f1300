"""Coordination core for driving a remote coding agent from chat and issue trackers."""

__version__ = "0.3.0"
