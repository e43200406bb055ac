"""
Registry of named value transforms.

TRANSFORM mappings refer to transforms by name. The compiler resolves the
name here and checks the transform's declared input and output types
against the mapping endpoints.

Usage:
    # Decorator registration (default registry)
    @register_transform("grade_from_score", FieldType.INTEGER, FieldType.TEXT)
    def grade_from_score(score: int) -> str:
        return "A" if score >= 90 else "B"

    # Explicit registration in an isolated registry
    registry = TransformRegistry()
    registry.register("upper", str.upper, FieldType.TEXT, FieldType.TEXT)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from tablemigrate.exceptions import DuplicateTransformError, TransformNotFoundError
from tablemigrate.mapping.models import RegisteredTransform
from tablemigrate.rows.schema import FieldType

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class TransformRegistry:
    """
    Thread-safe mapping of transform names to typed callables.

    Example:
        >>> registry = TransformRegistry()
        >>> registry.register("upper", str.upper, FieldType.TEXT, FieldType.TEXT)
        >>> registry.get("upper")("abc")
        'ABC'
    """

    def __init__(self) -> None:
        self._transforms: dict[str, RegisteredTransform] = {}
        self._lock = threading.RLock()

    def register(
        self,
        name: str,
        func: Callable[[Any], Any],
        input_type: FieldType,
        output_type: FieldType,
    ) -> RegisteredTransform:
        """
        Register a transform under a name.

        Raises:
            DuplicateTransformError: If the name is already registered
        """
        if not name:
            raise ValueError("Transform name must not be empty")
        registered = RegisteredTransform(
            name=name, func=func, input_type=input_type, output_type=output_type
        )
        with self._lock:
            if name in self._transforms:
                raise DuplicateTransformError(name)
            self._transforms[name] = registered
        logger.debug(
            "Registered transform '%s' (%s -> %s)",
            name,
            input_type.value,
            output_type.value,
            extra={"transform": name},
        )
        return registered

    def get(self, name: str) -> RegisteredTransform:
        """
        Look up a transform by name.

        Raises:
            TransformNotFoundError: If the name is not registered
        """
        with self._lock:
            if name not in self._transforms:
                raise TransformNotFoundError(name, sorted(self._transforms))
            return self._transforms[name]

    def get_or_none(self, name: str) -> RegisteredTransform | None:
        with self._lock:
            return self._transforms.get(name)

    def contains(self, name: str) -> bool:
        with self._lock:
            return name in self._transforms

    def list_names(self) -> list[str]:
        with self._lock:
            return sorted(self._transforms)

    def unregister(self, name: str) -> bool:
        """Remove a transform. Returns True if it was registered."""
        with self._lock:
            return self._transforms.pop(name, None) is not None

    def clear(self) -> None:
        """Remove all transforms. Primarily useful for testing."""
        with self._lock:
            self._transforms.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._transforms)

    def __bool__(self) -> bool:
        return True

    def __contains__(self, name: str) -> bool:
        return self.contains(name)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._transforms))


default_registry = TransformRegistry()


def register_transform(
    name: str,
    input_type: FieldType,
    output_type: FieldType,
    *,
    registry: TransformRegistry | None = None,
) -> Callable[[F], F]:
    """
    Decorator registering a function as a named transform.

    The decorated function is returned unchanged.

    Example:
        >>> @register_transform("cents_to_units", FieldType.INTEGER, FieldType.DECIMAL)
        ... def cents_to_units(cents: int) -> Decimal:
        ...     return Decimal(cents) / 100
    """
    target_registry = registry or default_registry

    def decorator(func: F) -> F:
        target_registry.register(name, func, input_type, output_type)
        return func

    return decorator


__all__ = [
    "TransformRegistry",
    "default_registry",
    "register_transform",
]
