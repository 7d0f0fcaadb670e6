# presence_server/__init__.py
"""Presence server: online-user registry, fanout and direct-message routing."""
