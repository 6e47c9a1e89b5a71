"""
Category maps: symbolic names for per-site category labels.

A category map file looks like::

    NCATS = 4
    CDS      1-3
    intron   4

Category 0 is the background and is labeled ``background`` unless a line
names it explicitly.
"""

from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from ..errors import ConfigurationError


@dataclass
class CategoryMap:
    """
    Mapping between feature names and category ids.

    Attributes
    ----------
    ncats : int
        Largest category id
    ranges : dict[str, tuple[int, int]]
        Feature name to inclusive range of category ids
    """

    ncats: int
    ranges: dict[str, tuple[int, int]] = field(default_factory=dict)

    @classmethod
    def from_string(cls, text: str) -> "CategoryMap":
        ncats = None
        ranges = {}
        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.split('#', 1)[0].strip()
            if not line:
                continue
            if line.upper().startswith('NCATS'):
                try:
                    ncats = int(line.split('=', 1)[1])
                except (IndexError, ValueError):
                    raise ConfigurationError(f"Bad NCATS line in category map: {raw!r}")
                continue
            fields = line.split()
            if len(fields) < 2:
                raise ConfigurationError(f"Bad category map line {lineno}: {raw!r}")
            name, span = fields[0], fields[1]
            try:
                if '-' in span:
                    lo, hi = (int(x) for x in span.split('-', 1))
                else:
                    lo = hi = int(span)
            except ValueError:
                raise ConfigurationError(f"Bad category range on line {lineno}: {span!r}")
            if lo > hi or lo < 0:
                raise ConfigurationError(f"Bad category range on line {lineno}: {span!r}")
            ranges[name] = (lo, hi)

        if ncats is None:
            ncats = max((hi for _, hi in ranges.values()), default=0)
        for name, (lo, hi) in ranges.items():
            if hi > ncats:
                raise ConfigurationError(
                    f"Feature {name} uses category {hi} but NCATS = {ncats}"
                )
        return cls(ncats=ncats, ranges=ranges)

    @classmethod
    def from_file(cls, filepath: Path | str) -> "CategoryMap":
        with open(filepath, 'r') as f:
            return cls.from_string(f.read())

    def resolve(self, requests: list[str]) -> list[int]:
        """
        Resolve feature names or literal numbers to category ids.

        Parameters
        ----------
        requests : list[str]
            Feature names (expanded to their full range) or integers

        Returns
        -------
        list[int]
            Category ids in request order, without duplicates
        """
        cats = []
        for req in requests:
            req = req.strip()
            if req in self.ranges:
                lo, hi = self.ranges[req]
                ids = range(lo, hi + 1)
            elif req == 'background':
                ids = [0]
            else:
                try:
                    ids = [int(req)]
                except ValueError:
                    raise ConfigurationError(f"Unknown category '{req}'")
                if not 0 <= ids[0] <= self.ncats:
                    raise ConfigurationError(
                        f"Category {ids[0]} out of range (0..{self.ncats})"
                    )
            for cat in ids:
                if cat not in cats:
                    cats.append(cat)
        return cats

    def label(self, cat: int) -> str:
        """Unique, filename-friendly label for category ``cat``."""
        for name, (lo, hi) in self.ranges.items():
            if lo <= cat <= hi:
                return name if lo == hi else f"{name}-{cat - lo + 1}"
        if cat == 0:
            return "background"
        return str(cat)


def read_site_categories(filepath: Path | str) -> np.ndarray:
    """Read whitespace-separated integer category labels, one per column."""
    with open(filepath, 'r') as f:
        try:
            return np.array([int(tok) for tok in f.read().split()], dtype=np.int64)
        except ValueError as e:
            raise ConfigurationError(f"Bad site category file {filepath}: {e}")
