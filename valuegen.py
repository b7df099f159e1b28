"""Runtime support for modules processed by tools/valuegen_gen.py.

Generated ``__repr__`` methods call :func:`to_string_helper`, generated
``__hash__`` methods call :func:`hash_values`; every generated value method
carries the :func:`override` marker.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Tuple, TypeVar

__all__ = ["hash_values", "override", "to_string_helper"]

F = TypeVar("F", bound=Callable[..., Any])


def override(method: F) -> F:
    """Mark ``method`` as overriding the ``object`` implementation.

    Same contract as ``typing.override``: the function gets
    ``__override__ = True`` and is returned unchanged.
    """
    method.__override__ = True
    return method


def _hashable(value: object) -> object:
    if isinstance(value, (list, tuple)):
        return tuple(_hashable(item) for item in value)
    if isinstance(value, dict):
        return frozenset((_hashable(k), _hashable(v)) for k, v in value.items())
    if isinstance(value, (set, frozenset)):
        return frozenset(_hashable(item) for item in value)
    return value


def hash_values(*values: object) -> int:
    """Order-sensitive hash over ``values``.

    Lists, tuples, dicts and sets are hashed by content, so containers that
    compare equal hash alike.
    """
    return hash(tuple(_hashable(value) for value in values))


def to_string_helper(
    instance: object,
    entries: Iterable[Tuple[str, object]],
    omit_null_values: bool = False,
) -> str:
    """Render ``ClassName{label=value, ...}`` for ``instance``.

    The class name is the unqualified runtime name, so subclasses that inherit
    a generated ``__repr__`` report their own name. Values are rendered with
    ``repr()``; ``None`` values are left out when ``omit_null_values`` is set.
    """
    parts = []
    for label, value in entries:
        if omit_null_values and value is None:
            continue
        parts.append(f"{label}={value!r}")
    return f"{type(instance).__name__}{{{', '.join(parts)}}}"
