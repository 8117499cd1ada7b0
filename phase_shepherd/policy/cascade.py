"""Ordered optional lookups (phase -> policy -> global)."""

from __future__ import annotations

from functools import reduce
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

Lookup = Callable[[], Optional[T]]


def first_defined(lookups: Iterable[Lookup], default: Optional[T] = None) -> Optional[T]:
    """
    Fold lookups left to right and return the first non-None result.

    Lookups after the first hit are not called. ``default`` is returned when
    every lookup yields None.
    """
    found = reduce(
        lambda acc, lookup: acc if acc is not None else lookup(),
        lookups,
        None,
    )
    return default if found is None else found
