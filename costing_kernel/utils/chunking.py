"""
Bounded bulk lookups.

Large key sets (order ids for a month of shipments) must never go to the
database as one unbounded ``IN (...)`` list.  ``chunked`` splits any
iterable into fixed-size lists; ``fetch_in_chunks`` runs a query per chunk
and merges the results client-side.
"""

from collections.abc import Callable, Iterable, Iterator
from typing import TypeVar

K = TypeVar("K")
R = TypeVar("R")

DEFAULT_CHUNK_SIZE = 200


def chunked(items: Iterable[K], size: int = DEFAULT_CHUNK_SIZE) -> Iterator[list[K]]:
    """Yield successive lists of at most ``size`` items, preserving order."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    chunk: list[K] = []
    for item in items:
        chunk.append(item)
        if len(chunk) == size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def fetch_in_chunks(
    keys: Iterable[K],
    fetch: Callable[[list[K]], Iterable[R]],
    size: int = DEFAULT_CHUNK_SIZE,
) -> set[R]:
    """
    Run ``fetch`` over bounded chunks of distinct ``keys`` and merge into a set.

    ``fetch`` receives a list of at most ``size`` keys and returns any
    iterable of hashable results.
    """
    unique = list(dict.fromkeys(keys))
    merged: set[R] = set()
    for chunk in chunked(unique, size):
        merged.update(fetch(chunk))
    return merged
