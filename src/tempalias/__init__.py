"""tempalias - short-lived email aliases with automatic expiry.

Provisions time-bounded forwarding aliases against a mail-forwarding
provider, deletes them when their validity window ends, and surfaces
confirmation codes found in forwarded message subjects.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
