# presence_common/__init__.py
"""Wire protocol and transport encryption shared by the presence server and client."""
