"""
Field mapping compiler.

Validates rule specs against a source and target table shape and turns
them into a CompiledMapping. Every violation is collected before
CompileError is raised, so a broken definition can be fixed in one pass.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from tablemigrate.exceptions import CompileError, MappingViolation
from tablemigrate.mapping.models import (
    CompiledMapping,
    FieldMapping,
    MappingKind,
    RuleSpec,
)
from tablemigrate.mapping.registry import TransformRegistry, default_registry
from tablemigrate.observability import Tracer, create_tracer
from tablemigrate.observability.attributes import (
    ATTR_PHASE_ID,
    ATTR_RULE_COUNT,
    ATTR_SOURCE_TABLE,
    ATTR_TARGET_TABLE,
)
from tablemigrate.rows.schema import TableShape

logger = logging.getLogger(__name__)


class MappingCompiler:
    """
    Compiles declarative field mappings.

    Checks performed:
        - referenced fields exist in their shapes
        - each target field is mapped at most once
        - DIRECT types are identical or losslessly convertible
        - CONSTANT values fit the target type (None only when nullable)
        - TRANSFORM names resolve and their declared types fit both endpoints
        - every non-nullable or key target field is mapped

    Example:
        >>> compiler = MappingCompiler()
        >>> mapping = compiler.compile(
        ...     source_shape,
        ...     target_shape,
        ...     [direct("id", "id"), direct("x", "x"), constant("y", "MIGRATED")],
        ... )
    """

    def __init__(
        self,
        registry: TransformRegistry | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    @property
    def registry(self) -> TransformRegistry:
        return self._registry

    def compile(
        self,
        source_shape: TableShape,
        target_shape: TableShape,
        rules: Sequence[RuleSpec],
        *,
        phase_id: str | None = None,
    ) -> CompiledMapping:
        """
        Compile rule specs into a CompiledMapping.

        Args:
            source_shape: Shape of the table rows are read from
            target_shape: Shape of the table rows are written to
            rules: Mapping rules, one per target field
            phase_id: Phase the mapping belongs to (for error context)

        Returns:
            The compiled mapping

        Raises:
            CompileError: Listing every violation found
        """
        with self._tracer.span(
            "tablemigrate.mapping.compile",
            {
                ATTR_SOURCE_TABLE: source_shape.name,
                ATTR_TARGET_TABLE: target_shape.name,
                ATTR_RULE_COUNT: len(rules),
                ATTR_PHASE_ID: phase_id or "",
            },
        ):
            violations: list[MappingViolation] = []
            mappings: list[FieldMapping] = []
            seen_targets: set[str] = set()

            for rule in rules:
                if rule.target in seen_targets:
                    violations.append(
                        MappingViolation(
                            rule.source, rule.target, "target field is mapped more than once"
                        )
                    )
                    continue
                seen_targets.add(rule.target)
                mapping = self._compile_rule(rule, source_shape, target_shape, violations)
                if mapping is not None:
                    mappings.append(mapping)

            for spec in target_shape.fields:
                required = not spec.nullable or spec.field_id in target_shape.key
                if required and spec.field_id not in seen_targets:
                    violations.append(
                        MappingViolation(
                            None,
                            spec.field_id,
                            "target field is required but has no mapping",
                        )
                    )

            if violations:
                logger.error(
                    "Mapping %s -> %s has %d violation(s)",
                    source_shape.name,
                    target_shape.name,
                    len(violations),
                    extra={"phase_id": phase_id},
                )
                raise CompileError(violations, phase_id=phase_id)

            return CompiledMapping(
                source_shape=source_shape,
                target_shape=target_shape,
                mappings=tuple(mappings),
            )

    def _compile_rule(
        self,
        rule: RuleSpec,
        source_shape: TableShape,
        target_shape: TableShape,
        violations: list[MappingViolation],
    ) -> FieldMapping | None:
        """Compile one rule, appending any problems to ``violations``."""
        found = len(violations)
        target_spec = target_shape.field(rule.target)
        if target_spec is None:
            violations.append(
                MappingViolation(
                    rule.source, rule.target, f"unknown target field of {target_shape.name}"
                )
            )
        target_nullable = (
            target_spec is not None
            and target_spec.nullable
            and rule.target not in target_shape.key
        )

        if rule.kind is MappingKind.CONSTANT:
            if target_spec is not None:
                if rule.value is None and not target_nullable:
                    violations.append(
                        MappingViolation(
                            None, rule.target, "constant None for a non-nullable field"
                        )
                    )
                elif rule.value is not None and not target_spec.type.accepts(rule.value):
                    violations.append(
                        MappingViolation(
                            None,
                            rule.target,
                            f"constant {rule.value!r} is not a {target_spec.type.value} value",
                        )
                    )
            if len(violations) > found or target_spec is None:
                return None
            return FieldMapping(
                source_field_id=None,
                target_field_id=rule.target,
                kind=MappingKind.CONSTANT,
                target_type=target_spec.type,
                target_nullable=target_nullable,
                constant=rule.value,
            )

        source_spec = source_shape.field(rule.source) if rule.source else None
        if source_spec is None:
            violations.append(
                MappingViolation(
                    rule.source, rule.target, f"unknown source field of {source_shape.name}"
                )
            )

        if rule.kind is MappingKind.DIRECT:
            if source_spec is not None and target_spec is not None:
                if not source_spec.type.can_convert_to(target_spec.type):
                    violations.append(
                        MappingViolation(
                            rule.source,
                            rule.target,
                            f"incompatible types: {source_spec.type.value} "
                            f"cannot be converted to {target_spec.type.value} without loss",
                        )
                    )
            if len(violations) > found or source_spec is None or target_spec is None:
                return None
            return FieldMapping(
                source_field_id=rule.source,
                target_field_id=rule.target,
                kind=MappingKind.DIRECT,
                source_type=source_spec.type,
                target_type=target_spec.type,
                target_nullable=target_nullable,
            )

        registered = self._registry.get_or_none(rule.transform_name or "")
        if registered is None:
            violations.append(
                MappingViolation(
                    rule.source,
                    rule.target,
                    f"unknown transform {rule.transform_name!r}",
                )
            )
        else:
            if source_spec is not None and not source_spec.type.can_convert_to(
                registered.input_type
            ):
                violations.append(
                    MappingViolation(
                        rule.source,
                        rule.target,
                        f"transform {registered.name!r} expects {registered.input_type.value}, "
                        f"source is {source_spec.type.value}",
                    )
                )
            if target_spec is not None and not registered.output_type.can_convert_to(
                target_spec.type
            ):
                violations.append(
                    MappingViolation(
                        rule.source,
                        rule.target,
                        f"transform {registered.name!r} returns {registered.output_type.value}, "
                        f"target is {target_spec.type.value}",
                    )
                )
        if len(violations) > found or source_spec is None or target_spec is None:
            return None
        return FieldMapping(
            source_field_id=rule.source,
            target_field_id=rule.target,
            kind=MappingKind.TRANSFORM,
            source_type=source_spec.type,
            target_type=target_spec.type,
            target_nullable=target_nullable,
            transform=registered,
        )


__all__ = ["MappingCompiler"]
