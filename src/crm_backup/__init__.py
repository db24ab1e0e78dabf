"""
CRM backup/restore engine.

Produces redacted, versioned point-in-time snapshots of the CRM store and
restores them atomically.
"""

__version__ = "2.0.0"
