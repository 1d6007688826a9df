"""
Converters from admin-authored schema definitions to runtime specs.
"""

from eavgate_back.converters.schema_converter import (
    convert_attribute,
    convert_entity,
    load_schema_dir,
    load_schema_file,
)

__all__ = [
    "convert_attribute",
    "convert_entity",
    "load_schema_dir",
    "load_schema_file",
]
