"""
Input/Output modules for alignments, trees and model files.

This module provides classes for reading and working with:

- **Sequence alignments**: FASTA and PHYLIP formats
- **Phylogenetic trees**: Newick format
- **Site categories**: category maps and per-column labels

Tree model files are read and written by :mod:`phylofit.io.model_file`.
"""

from phylofit.io.category_map import CategoryMap
from phylofit.io.sequences import Alignment
from phylofit.io.trees import Tree, TreeNode

__all__ = ["Alignment", "CategoryMap", "Tree", "TreeNode"]
