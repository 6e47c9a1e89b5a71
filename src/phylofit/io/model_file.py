"""
Tree model files (``.mod``).

A model file is a list of ``KEY: value`` lines::

    ALPHABET: A C G T
    ORDER: 0
    SUBST_MOD: HKY85
    TRAINING_LNL: -2104.5612
    BACKGROUND: 0.29 0.21 0.22 0.28
    RATE_PARAMS: 4.12
    RATE_MAT:
      -0.9 0.15 0.6 0.15
      ...
    TREE: ((human:0.01,chimp:0.012):0.05,mouse:0.3);
    IGNORE_BRANCHES: mouse

``RATE_MAT`` is informational; the matrix is rebuilt from the parameters on
reading. Branch lengths are written with any scale factors applied.
``IGNORE_BRANCHES`` is present only when some branches were ignored.
"""

from pathlib import Path
from typing import Optional

import numpy as np

from ..errors import ConfigurationError, DataError
from ..models.subst import parse_subst_model
from ..models.tree_model import TreeModel
from .trees import Tree

PRECISION = 10


def _fmt(values) -> str:
    return " ".join(f"{v:.{PRECISION}g}" for v in np.atleast_1d(values))


def format_model(model: TreeModel) -> str:
    """Text of the model file for ``model``."""
    model.set_subst_matrices()
    tree = model.tree.copy()
    lengths = model.edge_lengths()
    for node in tree.nodes:
        node.branch_length = float(lengths[node.id])

    lines = [
        f"ALPHABET: {' '.join(model.alphabet)}",
        f"ORDER: {model.order}",
        f"SUBST_MOD: {model.kind.value}",
    ]
    if model.nratecats > 1:
        lines.append(f"NRATECATS: {model.nratecats}")
        if model.rate_consts is not None:
            lines.append(f"RATE_CONSTS: {_fmt(model.rate_consts)}")
            lines.append(f"RATE_WEIGHTS: {_fmt(model.rate_weights)}")
        else:
            lines.append(f"ALPHA: {model.alpha:.{PRECISION}g}")
    if model.lnl is not None:
        lines.append(f"TRAINING_LNL: {model.lnl:.{PRECISION}g}")
    lines.append(f"BACKGROUND: {_fmt(model.backgd)}")
    if len(model.subst_params):
        lines.append(f"RATE_PARAMS: {_fmt(model.subst_params)}")
    lines.append("RATE_MAT:")
    for row in model.rate_matrix:
        lines.append("  " + " ".join(f"{v:12.6f}" for v in row))
    lines.append(f"TREE: {tree.to_newick(precision=PRECISION)}")
    if model.ignored:
        names = dict.fromkeys(
            model.tree.nodes[i].name or model.tree.nodes[i].label for i in sorted(model.ignored)
        )
        lines.append(f"IGNORE_BRANCHES: {' '.join(names)}")

    for alt in model.alt_models:
        lines.append(f"ALT_MODEL: {alt.spec}")
        if len(alt.subst_params):
            lines.append(f"ALT_RATE_PARAMS: {_fmt(alt.subst_params)}")
        if alt.backgd is not None:
            lines.append(f"ALT_BACKGROUND: {_fmt(alt.backgd)}")
    return "\n".join(lines) + "\n"


def write_model(model: TreeModel, filepath: Path | str) -> None:
    """Write ``model`` to ``filepath``."""
    with open(filepath, 'w') as f:
        f.write(format_model(model))


def parse_model(text: str) -> TreeModel:
    """
    Build a tree model from model-file text.

    Raises
    ------
    DataError
        If a required field is missing or malformed
    """
    fields: dict[str, str] = {}
    alts: list[dict[str, str]] = []
    for raw in text.splitlines():
        if not raw.strip() or raw.startswith((' ', '\t')):
            continue
        key, sep, value = raw.partition(':')
        if not sep:
            raise DataError(f"Bad model file line: {raw!r}")
        key, value = key.strip(), value.strip()
        if key == "ALT_MODEL":
            alts.append({"spec": value})
        elif key.startswith("ALT_"):
            if not alts:
                raise DataError(f"{key} before any ALT_MODEL line")
            alts[-1][key] = value
        else:
            fields[key] = value

    for key in ("ALPHABET", "SUBST_MOD", "BACKGROUND", "TREE"):
        if key not in fields:
            raise DataError(f"Model file has no {key} line")

    def floats(key: str, source: Optional[dict] = None) -> Optional[np.ndarray]:
        source = fields if source is None else source
        if key not in source:
            return None
        try:
            return np.array([float(v) for v in source[key].split()])
        except ValueError:
            raise DataError(f"Bad numbers in {key} line: {source[key]!r}")

    try:
        kind = parse_subst_model(fields["SUBST_MOD"])
        tree = Tree.from_newick(fields["TREE"])
        nratecats = int(fields.get("NRATECATS", "1"))
        alpha = float(fields.get("ALPHA", "1.0"))
    except ValueError as e:
        raise DataError(f"Bad model file: {e}") from e

    alphabet = "".join(fields["ALPHABET"].split())
    rate_consts = floats("RATE_CONSTS")
    model = TreeModel.new(
        tree=tree,
        kind=kind,
        alphabet=alphabet,
        nratecats=nratecats,
        alpha=alpha,
        rate_consts=rate_consts,
        backgd=floats("BACKGROUND"),
        subst_params=floats("RATE_PARAMS") if "RATE_PARAMS" in fields else None,
    )
    if "ORDER" in fields and int(fields["ORDER"]) != model.order:
        raise DataError(
            f"ORDER {fields['ORDER']} does not match {kind.value} (order {model.order})"
        )
    weights = floats("RATE_WEIGHTS")
    if weights is not None:
        model.rate_weights = weights / weights.sum()
    if "TRAINING_LNL" in fields:
        model.lnl = float(fields["TRAINING_LNL"])

    if alts:
        model.attach_alt_models([alt["spec"] for alt in alts])
        for alt, values in zip(model.alt_models, alts):
            params = floats("ALT_RATE_PARAMS", values)
            if params is not None:
                alt.subst_params = params
            backgd = floats("ALT_BACKGROUND", values)
            if backgd is not None:
                alt.backgd = backgd
    if "IGNORE_BRANCHES" in fields:
        try:
            model.set_ignored_branches(fields["IGNORE_BRANCHES"].split())
        except ConfigurationError as e:
            raise DataError(f"Bad IGNORE_BRANCHES line: {e}") from e
    model.set_subst_matrices()
    return model


def read_model(filepath: Path | str) -> TreeModel:
    """Read a tree model file."""
    with open(filepath, 'r') as f:
        return parse_model(f.read())
