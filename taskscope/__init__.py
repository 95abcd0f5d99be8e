"""Instrumentation visitors, task and resource statistics, locks, string interning, key handling and configuration for an async task console."""

__version__ = "0.1.0"