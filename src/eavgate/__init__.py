"""
eavgate - schema-driven object gateway.

Administrators define object schemas (entities with attributes) at runtime.
Incoming JSON payloads are validated against those schemas, stored as an
attributed-value object graph, rendered back to JSON and mirrored to
external HTTP sources.
"""

from eavgate._version import get_version as _get_version

__version__ = _get_version()

__all__ = ["__version__"]
