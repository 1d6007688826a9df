"""
Schema specification types.

This module exports all runtime schema types.
"""

from eavgate_back.specs.entity import (
    AttributeFormat,
    AttributeSpec,
    AttributeType,
    EntitySpec,
)

__all__ = [
    "AttributeFormat",
    "AttributeSpec",
    "AttributeType",
    "EntitySpec",
]
