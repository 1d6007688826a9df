"""
eavgate backend

Runtime schema specification and the engine that validates, stores, renders
and synchronizes attributed-value object graphs.

This package provides:
- specs: EntitySpec / AttributeSpec schema types
- converters: admin-authored JSON definitions to EntitySpec
- runtime: validator, renderer, synchronizer, repository and mutation service
"""

from eavgate._version import get_version as _get_version
from eavgate_back.specs.entity import AttributeSpec, EntitySpec

__version__ = _get_version()

__all__ = ["AttributeSpec", "EntitySpec"]
