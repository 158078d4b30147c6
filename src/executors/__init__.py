"""Capability adapters that execute mission steps."""
