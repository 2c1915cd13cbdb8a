"""Peer-test assignment and link-report consistency engine.

Assigns testing teams to student projects under a per-team load cap,
holds batch proposals until confirmed, and blocks testing while a
project's deployed link is reported broken.
"""

__version__ = "0.1.0"
