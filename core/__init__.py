"""Core module - models, configuration, errors and observability.

Shared by the extractors, the ledger, the import pipeline and the
Temporal/HTTP surfaces.
"""

__version__ = "1.0.0"
