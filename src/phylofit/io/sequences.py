"""
Sequence file parsing and alignment handling.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np


DNA_ALPHABET = "ACGT"
GAP_CHAR = "-"
MISSING_CHAR = "*"

# Characters that never count as observed bases; anything outside the
# model alphabet (N, IUPAC ambiguity codes, '?', '.') is missing as well
MISSING_CHARS = "*N?."


@dataclass
class Alignment:
    """
    Multiple sequence alignment of nucleotides.

    Attributes
    ----------
    names : list[str]
        Sequence names/labels
    sequences : Optional[ndarray], shape (n_species, length)
        Upper-case characters as uint8 codes; None once dropped after
        sufficient statistics have been extracted from a very large alignment
    length : int
        Number of columns
    alphabet : str
        Alphabet of observed bases
    categories : Optional[ndarray], shape (length,)
        Per-column category labels (0 = background)
    """

    names: list[str]
    sequences: Optional[np.ndarray]
    length: int
    alphabet: str = DNA_ALPHABET
    categories: Optional[np.ndarray] = None

    @property
    def n_species(self) -> int:
        return len(self.names)

    @property
    def ncats(self) -> int:
        """Largest category label, or -1 without category information."""
        if self.categories is None:
            return -1
        return int(self.categories.max()) if self.length > 0 else 0

    @classmethod
    def from_sequences(
        cls,
        names: list[str],
        sequences: list[str],
        categories: Optional[list[int]] = None,
        alphabet: str = DNA_ALPHABET,
    ) -> "Alignment":
        """
        Build an alignment from sequence strings.

        Parameters
        ----------
        names : list[str]
            Sequence names
        sequences : list[str]
            Aligned sequences, all of the same length
        categories : list[int], optional
            Per-column category labels
        alphabet : str
            Alphabet of observed bases

        Returns
        -------
        Alignment
            Alignment with upper-cased sequences

        Examples
        --------
        >>> aln = Alignment.from_sequences(["a", "b"], ["ACGT", "ACGA"])
        >>> aln.length
        4
        """
        if len(names) != len(sequences):
            raise ValueError(f"Got {len(names)} names but {len(sequences)} sequences")
        if len(set(names)) != len(names):
            raise ValueError("Sequence names must be unique")
        if not sequences:
            raise ValueError("Alignment has no sequences")

        length = len(sequences[0])
        for name, seq in zip(names, sequences):
            if len(seq) != length:
                raise ValueError(
                    f"Sequence {name} has length {len(seq)}, expected {length}"
                )

        encoded = np.array(
            [np.frombuffer(seq.upper().encode('ascii'), dtype=np.uint8) for seq in sequences],
            dtype=np.uint8,
        ).reshape(len(sequences), length)

        aln = cls(names=list(names), sequences=encoded, length=length, alphabet=alphabet)
        if categories is not None:
            aln.set_categories(categories)
        return aln

    @classmethod
    def from_fasta(cls, filepath: Path | str) -> "Alignment":
        """
        Parse FASTA format alignment file.

        Parameters
        ----------
        filepath : Path or str
            Path to FASTA format file

        Returns
        -------
        Alignment
            Parsed alignment
        """
        filepath = Path(filepath)

        names = []
        sequences_raw = []

        with open(filepath, 'r') as f:
            current_name = None
            current_seq = []

            for line in f:
                line = line.strip()

                if not line:
                    continue

                if line.startswith('>'):
                    if current_name is not None:
                        names.append(current_name)
                        sequences_raw.append(''.join(current_seq))
                    current_name = line[1:].split()[0]
                    current_seq = []
                else:
                    current_seq.append(re.sub(r'\s', '', line))

            if current_name is not None:
                names.append(current_name)
                sequences_raw.append(''.join(current_seq))

        if not names:
            raise ValueError(f"No sequences found in {filepath}")

        return cls.from_sequences(names, sequences_raw)

    @classmethod
    def from_phylip(cls, filepath: Path | str) -> "Alignment":
        """
        Parse sequential PHYLIP format alignment file.

        The first line contains n_sequences and sequence_length. Each
        sequence starts with its name, either on its own line or followed
        by whitespace and sequence data.

        Parameters
        ----------
        filepath : Path or str
            Path to PHYLIP format file

        Returns
        -------
        Alignment
            Parsed alignment
        """
        filepath = Path(filepath)

        with open(filepath, 'r') as f:
            lines = [line.rstrip() for line in f.readlines()]

        header = lines[0].strip().split()
        n_species = int(header[0])
        n_chars = int(header[1])

        names = []
        sequences_raw = []

        i = 1
        while i < len(lines) and len(names) < n_species:
            line = lines[i].strip()
            i += 1

            if not line:
                continue

            fields = line.split(None, 1)
            names.append(fields[0])
            seq_data = re.sub(r'\s', '', fields[1]) if len(fields) > 1 else ""

            while len(seq_data) < n_chars and i < len(lines):
                line = lines[i].strip()
                i += 1
                if line:
                    seq_data += re.sub(r'\s', '', line)

            sequences_raw.append(seq_data)

        if len(names) != n_species:
            raise ValueError(f"Expected {n_species} sequences, found {len(names)}")

        for name, seq in zip(names, sequences_raw):
            if len(seq) != n_chars:
                raise ValueError(
                    f"Sequence {name} has length {len(seq)}, expected {n_chars}"
                )

        return cls.from_sequences(names, sequences_raw)

    @classmethod
    def from_file(cls, filepath: Path | str) -> "Alignment":
        """Read FASTA or PHYLIP, detected from the first non-blank character."""
        with open(filepath, 'r') as f:
            first = f.read(4096).lstrip()
        if first.startswith('>'):
            return cls.from_fasta(filepath)
        return cls.from_phylip(filepath)

    def set_categories(self, categories) -> None:
        """Attach per-column category labels."""
        cats = np.asarray(categories, dtype=np.int64)
        if cats.shape != (self.length,):
            raise ValueError(
                f"Got {cats.shape[0] if cats.ndim else 0} category labels "
                f"for an alignment of length {self.length}"
            )
        if np.any(cats < 0):
            raise ValueError("Category labels must be non-negative")
        self.categories = cats

    def sequence(self, index: int) -> str:
        """Sequence ``index`` as a string."""
        if self.sequences is None:
            raise ValueError("Raw sequence data has been discarded")
        return self.sequences[index].tobytes().decode('ascii')

    def coord_map(self, ref: int = 0) -> np.ndarray:
        """
        Map coordinates of sequence ``ref`` onto alignment columns.

        Returns
        -------
        np.ndarray
            ``cmap[p]`` is the 1-based alignment column of the p-th (1-based)
            non-gap character of the reference; ``cmap[0]`` is unused
        """
        if self.sequences is None:
            raise ValueError("Raw sequence data has been discarded")
        ungapped = np.flatnonzero(self.sequences[ref] != ord(GAP_CHAR)) + 1
        return np.concatenate([[0], ungapped])

    def map_seq_to_msa(self, cmap: np.ndarray, pos: int) -> int:
        """Alignment column for reference position ``pos``, or -1 if outside."""
        if pos < 1 or pos >= len(cmap):
            return -1
        return int(cmap[pos])

    def sub_alignment(self, beg: int, end: int) -> "Alignment":
        """
        Columns ``beg..end`` (1-based, inclusive) as a new alignment.
        """
        if self.sequences is None:
            raise ValueError("Raw sequence data has been discarded")
        beg = max(beg, 1)
        end = min(end, self.length)
        sub = Alignment(
            names=list(self.names),
            sequences=self.sequences[:, beg - 1:end].copy(),
            length=max(end - beg + 1, 0),
            alphabet=self.alphabet,
        )
        if self.categories is not None:
            sub.categories = self.categories[beg - 1:end].copy()
        return sub

    def drop_sequences(self) -> None:
        """Release the raw sequence buffer."""
        self.sequences = None
