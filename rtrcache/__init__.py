"""RPKI-to-Router cache server: PDU wire format, ROA feeds and diffs, router sessions."""

__version__ = "0.1.0"