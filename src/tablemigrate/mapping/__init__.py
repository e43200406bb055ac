"""
Declarative field mapping.

Rule specs describe how each target field is produced; MappingCompiler
checks them against the table shapes and returns a CompiledMapping that
the transfer executor applies row by row.
"""

from tablemigrate.mapping.compiler import MappingCompiler
from tablemigrate.mapping.models import (
    CompiledMapping,
    FieldMapping,
    MappingKind,
    RegisteredTransform,
    RuleSpec,
    constant,
    direct,
    transform,
)
from tablemigrate.mapping.registry import (
    TransformRegistry,
    default_registry,
    register_transform,
)

__all__ = [
    "MappingCompiler",
    "MappingKind",
    "RuleSpec",
    "direct",
    "constant",
    "transform",
    "FieldMapping",
    "CompiledMapping",
    "RegisteredTransform",
    "TransformRegistry",
    "default_registry",
    "register_transform",
]
