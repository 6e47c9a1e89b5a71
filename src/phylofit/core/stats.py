"""
Sufficient statistics for tree likelihood computation.

An alignment column tuple is the (order + 1)-wide window of columns ending at
a given column; the likelihood of an alignment depends on the data only
through the number of times each distinct tuple occurs.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..io.sequences import Alignment, GAP_CHAR, MISSING_CHAR


@dataclass
class SufficientStats:
    """
    Counts of distinct column tuples.

    Attributes
    ----------
    names : list[str]
        Sequence names, in the row order of each tuple
    alphabet : str
        Alphabet of the alignment the statistics came from
    tuples : ndarray, shape (ntuples, tuple_size, nseqs)
        Distinct tuples as uint8 character codes; position ``tuple_size - 1``
        is the current column, earlier positions are the preceding columns
    counts : ndarray, shape (ntuples,)
        Occurrences of each tuple
    cat_counts : Optional[dict[int, ndarray]]
        Per-category occurrences, when the alignment has categories
    tuple_idx : Optional[ndarray], shape (length,)
        Tuple index of each alignment column (-1 for excluded columns)
    compacted : bool
        Whether tuples differing only in missing symbols have been merged
    """

    names: list[str]
    alphabet: str
    tuples: np.ndarray
    counts: np.ndarray
    cat_counts: Optional[dict[int, np.ndarray]] = None
    tuple_idx: Optional[np.ndarray] = None
    compacted: bool = False

    @property
    def ntuples(self) -> int:
        return self.tuples.shape[0]

    @property
    def tuple_size(self) -> int:
        return self.tuples.shape[1]

    @property
    def nseqs(self) -> int:
        return self.tuples.shape[2]

    @classmethod
    def from_alignment(
        cls,
        alignment: Alignment,
        tuple_size: int,
        cats: Optional[list[int]] = None,
    ) -> "SufficientStats":
        """
        Extract tuple counts from an alignment.

        Parameters
        ----------
        alignment : Alignment
            Alignment with raw sequence data
        tuple_size : int
            Width of each tuple (model order + 1)
        cats : list[int], optional
            If given (and the alignment has categories), only columns in
            these categories are counted

        Returns
        -------
        SufficientStats
            Statistics over the selected columns
        """
        if alignment.sequences is None:
            raise ValueError("Cannot extract sufficient statistics: raw sequences discarded")
        if tuple_size < 1:
            raise ValueError(f"tuple_size must be >= 1, got {tuple_size}")

        seqs = alignment.sequences
        nseqs, length = seqs.shape
        order = tuple_size - 1

        # Columns before the start of the alignment are missing data
        padded = np.full((nseqs, length + order), ord(MISSING_CHAR), dtype=np.uint8)
        padded[:, order:] = seqs
        windows = np.empty((length, tuple_size, nseqs), dtype=np.uint8)
        for offset in range(tuple_size):
            windows[:, offset, :] = padded[:, offset:offset + length].T

        selected = np.ones(length, dtype=bool)
        if alignment.categories is not None and cats is not None:
            selected = np.isin(alignment.categories, [c for c in cats if c >= 0])

        col_ids = np.flatnonzero(selected)
        flat = windows[col_ids].reshape(len(col_ids), tuple_size * nseqs)

        if len(col_ids) > 0:
            uniq, inverse, counts = np.unique(
                flat, axis=0, return_inverse=True, return_counts=True
            )
            inverse = np.asarray(inverse).reshape(-1)
        else:
            uniq = np.empty((0, tuple_size * nseqs), dtype=np.uint8)
            inverse = np.empty(0, dtype=np.int64)
            counts = np.empty(0, dtype=np.int64)

        tuple_idx = np.full(length, -1, dtype=np.int64)
        tuple_idx[col_ids] = inverse

        cat_counts = None
        if alignment.categories is not None:
            cat_counts = {}
            col_cats = alignment.categories[col_ids]
            for cat in np.unique(col_cats):
                cat_counts[int(cat)] = np.bincount(
                    inverse[col_cats == cat], minlength=len(uniq)
                ).astype(float)

        return cls(
            names=list(alignment.names),
            alphabet=alignment.alphabet,
            tuples=uniq.reshape(len(uniq), tuple_size, nseqs),
            counts=counts.astype(float),
            cat_counts=cat_counts,
            tuple_idx=tuple_idx,
        )

    def counts_for(self, cat: int = -1) -> np.ndarray:
        """Tuple counts for category ``cat`` (all sites when ``cat < 0``)."""
        if cat < 0 or self.cat_counts is None:
            return self.counts
        return self.cat_counts.get(cat, np.zeros(self.ntuples))

    def total_count(self, cat: int = -1) -> float:
        return float(self.counts_for(cat).sum())

    def collapse_missing(self, gaps_as_missing: bool = True) -> None:
        """
        Merge tuples that are identical once missing symbols are resolved.

        Every symbol outside the alphabet (and the gap symbol, unless gaps
        are modeled as a base) is replaced by the missing-data symbol, then
        identical tuples are merged. Irreversible; repeated calls are no-ops.

        Parameters
        ----------
        gaps_as_missing : bool, default=True
            Treat gaps as missing data rather than as a fifth base
        """
        if self.compacted:
            return

        observed = self.alphabet if gaps_as_missing else self.alphabet + GAP_CHAR
        is_observed = np.isin(self.tuples, np.frombuffer(observed.encode('ascii'), dtype=np.uint8))
        canon = np.where(is_observed, self.tuples, np.uint8(ord(MISSING_CHAR)))

        n, size, nseqs = canon.shape
        if n == 0:
            self.compacted = True
            return

        uniq, inverse = np.unique(canon.reshape(n, size * nseqs), axis=0, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)
        nnew = len(uniq)

        self.counts = np.bincount(inverse, weights=self.counts, minlength=nnew)
        if self.cat_counts is not None:
            self.cat_counts = {
                cat: np.bincount(inverse, weights=cc, minlength=nnew)
                for cat, cc in self.cat_counts.items()
            }
        if self.tuple_idx is not None:
            valid = self.tuple_idx >= 0
            remapped = self.tuple_idx.copy()
            remapped[valid] = inverse[self.tuple_idx[valid]]
            self.tuple_idx = remapped
        self.tuples = uniq.reshape(nnew, size, nseqs)
        self.compacted = True

    def informative_sites(self, cat: int = -1) -> int:
        """
        Number of columns with at least two observed (non-missing) bases.
        """
        if self.ntuples == 0:
            return 0
        bases = np.frombuffer(self.alphabet.encode('ascii'), dtype=np.uint8)
        n_observed = np.isin(self.tuples[:, -1, :], bases).sum(axis=1)
        return int(self.counts_for(cat)[n_observed >= 2].sum())

    def tuple_string(self, tup: int) -> str:
        """Tuple ``tup`` as text: one column string per tuple position."""
        return " ".join(
            self.tuples[tup, pos].tobytes().decode('ascii')
            for pos in range(self.tuple_size)
        )
