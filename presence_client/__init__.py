# presence_client/__init__.py
"""Client side of the presence layer: one managed connection per signed-in user."""
