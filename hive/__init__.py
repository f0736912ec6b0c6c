"""Hive: an agentic tool-calling executor for driving a live browser target."""

__version__ = "0.1.0"
