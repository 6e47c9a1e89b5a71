"""
Partition an alignment into independent units of work.

A unit is a (site category, window) pair. Categories come from per-column
labels of the alignment (optionally restricted), windows from a sliding
window specification or explicit coordinates in the frame of the reference
sequence.
"""

import warnings
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import numpy as np

from ..errors import ConfigurationError, PhyloFitWarning
from ..io.category_map import CategoryMap

# Category id meaning "all sites pooled"
POOL_ALL = -1


@dataclass(frozen=True)
class WorkUnit:
    """
    One independent fit.

    Attributes
    ----------
    cat : int
        Site category, or POOL_ALL
    window : int, optional
        Window index (0-based), or None for the whole alignment
    beg, end : int, optional
        1-based inclusive alignment columns of the window
    """

    cat: int
    window: Optional[int] = None
    beg: Optional[int] = None
    end: Optional[int] = None


def resolve_categories(
    alignment_ncats: int,
    do_cats: Optional[Sequence[str]] = None,
    category_map: Optional[CategoryMap] = None,
    quiet: bool = False,
) -> list[int]:
    """
    Categories to fit.

    Parameters
    ----------
    alignment_ncats : int
        Largest category label of the alignment, or -1 without categories
    do_cats : sequence of str, optional
        Restriction: category names (with a map) or numbers
    category_map : CategoryMap, optional
        Symbolic category names

    Returns
    -------
    list[int]
        Category ids; ``[POOL_ALL]`` when the alignment has no categories

    Examples
    --------
    >>> resolve_categories(-1)
    [-1]
    >>> resolve_categories(2)
    [0, 1, 2]
    """
    if alignment_ncats < 0:
        if do_cats and not quiet:
            warnings.warn(
                "Ignoring category restriction; no category information available",
                PhyloFitWarning,
            )
        return [POOL_ALL]

    if not do_cats:
        return list(range(alignment_ncats + 1))

    if category_map is not None:
        return category_map.resolve(list(do_cats))

    cats = []
    for req in do_cats:
        try:
            cat = int(req)
        except ValueError:
            raise ConfigurationError(
                f"Category '{req}' is not a number and no category map was given"
            )
        if cat not in cats:
            cats.append(cat)
    return cats


def nonoverlapping_categories(length: int, order: int) -> tuple[np.ndarray, tuple[str, ...]]:
    """
    Site labels for fitting to non-overlapping tuples.

    Every (order + 1)-th column gets category 1, so tuples ending at those
    columns do not overlap.

    Returns
    -------
    categories : ndarray, shape (length,)
        Per-column labels ``(i % (order + 1)) + 1``
    restriction : tuple of str
        The category restriction to fit, ``("1",)``
    """
    return np.arange(length) % (order + 1) + 1, ("1",)


def window_coords(length: int, size: int, shift: int) -> list[tuple[int, int]]:
    """
    Sliding windows in 1-based inclusive coordinates.

    Examples
    --------
    >>> window_coords(250, 100, 50)
    [(1, 100), (51, 150), (101, 200), (151, 250), (201, 250)]
    """
    if size < 1 or shift < 1:
        raise ConfigurationError("Window size and shift must be positive integers")
    pairs = []
    i = 1
    while i < length:
        pairs.append((i, min(i + size - 1, length)))
        i += shift
    return pairs


def explicit_window_coords(coords: Sequence[int]) -> list[tuple[int, int]]:
    """Pair up a flat ``beg1,end1,beg2,end2,...`` coordinate list."""
    if len(coords) % 2 != 0:
        raise ConfigurationError("Explicit windows must be given as begin,end pairs")
    return [(int(coords[i]), int(coords[i + 1])) for i in range(0, len(coords), 2)]


def map_windows(pairs: Sequence[tuple[int, int]], coord_map) -> list[Optional[tuple[int, int]]]:
    """
    Map windows from reference-sequence to alignment coordinates.

    Parameters
    ----------
    pairs : sequence of (int, int)
        Windows in the reference sequence's coordinates
    coord_map : callable or ndarray
        ``coord_map(pos)`` (or ``coord_map[pos]``) is the alignment column of
        reference position ``pos``, negative beyond the sequence

    Returns
    -------
    list
        Mapped windows; None for windows with an unmappable bound
    """
    lookup = coord_map if callable(coord_map) else (
        lambda pos: int(coord_map[pos]) if 0 < pos < len(coord_map) else -1
    )
    mapped = []
    for beg, end in pairs:
        mbeg, mend = lookup(beg), lookup(end)
        mapped.append(None if mbeg < 0 or mend < 0 else (mbeg, mend))
    return mapped


def enumerate_units(
    cats: Sequence[int],
    windows: Optional[Sequence[Optional[tuple[int, int]]]] = None,
) -> Iterator[WorkUnit]:
    """
    Work units in window-major, category-minor order.

    Windows that could not be mapped (None) are skipped but keep their index.
    """
    if windows is None:
        for cat in cats:
            yield WorkUnit(cat=cat)
        return
    for index, bounds in enumerate(windows):
        if bounds is None:
            continue
        for cat in cats:
            yield WorkUnit(cat=cat, window=index, beg=bounds[0], end=bounds[1])
