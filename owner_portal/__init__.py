"""Owner portal backend: monthly owner statements, SAFT exports and scheduled reports."""

__version__ = "1.4.0"
