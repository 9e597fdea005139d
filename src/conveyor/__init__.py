"""Conveyor: drive a coding agent through a fixed task list and publish the result."""

__version__ = "0.1.0"
