"""
orgaccess - organization membership and permission resolution engine.
"""

__version__ = "0.1.0"
