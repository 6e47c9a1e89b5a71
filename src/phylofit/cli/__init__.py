"""Command-line interface for phylofit."""
