"""
lme4-style model formulas for the multilevel posts.

Supported syntax:

    y ~ 1 + x + x:z + (1 + x || subject) + (1 | item)

* ``0`` (or ``-1``) drops the intercept, in the fixed or a random part.
* ``a:b`` is the elementwise product of two numeric columns.
* ``(terms | group)`` and ``(terms || group)`` both give independent
  (diagonal) random effects, one standard deviation per term.

Fixed-effect columns must already be numeric (dummy-code factors first).
"""

import re
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

INTERCEPT = "(Intercept)"

_NAME = re.compile(r"^[A-Za-z_][A-Za-z_0-9.]*(:[A-Za-z_][A-Za-z_0-9.]*)*$")


@dataclass
class RandomTerm:
    group: str
    intercept: bool = True
    terms: list = field(default_factory=list)

    @property
    def components(self):
        return ([INTERCEPT] if self.intercept else []) + list(self.terms)


@dataclass
class Formula:
    response: str
    intercept: bool = True
    fixed: list = field(default_factory=list)
    random: list = field(default_factory=list)
    text: str = ""

    @property
    def fixed_names(self):
        return ([INTERCEPT] if self.intercept else []) + list(self.fixed)

    @property
    def variables(self):
        """Every data column the formula reads, response excluded."""
        names = []
        for term in self.fixed + [t for r in self.random for t in r.terms]:
            names.extend(term.split(":"))
        names.extend(r.group for r in self.random)
        return list(dict.fromkeys(names))


def _normalize(text):
    # "- 1" is another spelling of "+ 0"
    return re.sub(r"-\s*1\b", "+0", text).strip().lstrip("+").strip()


def _split_top_level(text, sep="+"):
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in {text!r}")
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in {text!r}")
    parts.append("".join(current).strip())
    return parts


def _parse_terms(parts, where):
    intercept, terms = True, []
    for part in parts:
        if part == "":
            raise ValueError(f"Empty term in {where!r}")
        if part == "1":
            intercept = True
        elif part in ("0", "-1"):
            intercept = False
        elif _NAME.match(part):
            if part not in terms:
                terms.append(part)
        else:
            raise ValueError(f"Cannot parse term {part!r} in {where!r}")
    return intercept, terms


def _parse_random(body):
    if "||" in body:
        lhs, _, group = body.partition("||")
    elif "|" in body:
        lhs, _, group = body.partition("|")
    else:
        raise ValueError(f"Random-effect term needs a grouping bar: ({body})")
    group = group.strip()
    if not _NAME.match(group) or ":" in group:
        raise ValueError(f"Invalid grouping factor {group!r}")
    parts = _split_top_level(_normalize(lhs))
    intercept, terms = _parse_terms(parts, body)
    if not intercept and not terms:
        raise ValueError(f"Random-effect term ({body}) has no components")
    return RandomTerm(group=group, intercept=intercept, terms=terms)


def parse_formula(text):
    """
    Parse a formula string into a ``Formula``.

    Raises
    ------
    ValueError
        If the string is not of the form ``response ~ terms``.
    """
    if text.count("~") != 1:
        raise ValueError(f"Formula must contain exactly one '~': {text!r}")
    lhs, rhs = (s.strip() for s in text.split("~"))
    if not lhs or not _NAME.match(lhs) or ":" in lhs:
        raise ValueError(f"Invalid response in formula {text!r}")
    if not rhs:
        raise ValueError(f"Formula has no right-hand side: {text!r}")

    fixed_parts, random = [], []
    for part in _split_top_level(_normalize(rhs)):
        if part.startswith("(") and part.endswith(")"):
            random.append(_parse_random(part[1:-1]))
        else:
            fixed_parts.append(part)
    if fixed_parts:
        intercept, fixed = _parse_terms(fixed_parts, rhs)
    else:
        intercept, fixed = True, []
    return Formula(response=lhs, intercept=intercept, fixed=fixed,
                   random=random, text=text)


def _column(data, name):
    if name not in data.columns:
        raise ValueError(f"Column {name!r} not found in data")
    col = data[name]
    if pd.api.types.is_bool_dtype(col):
        return col.to_numpy(dtype=float)
    if not pd.api.types.is_numeric_dtype(col):
        raise ValueError(f"Column {name!r} must be numeric to enter the "
                         "model as a slope or fixed effect")
    return col.to_numpy(dtype=float)


def term_values(data, term):
    """Values of a (possibly interaction) term as a float array."""
    if term == INTERCEPT:
        return np.ones(len(data))
    out = np.ones(len(data))
    for name in term.split(":"):
        out = out * _column(data, name)
    return out


def group_levels(data, group):
    """Sorted level labels of a grouping column (as strings)."""
    if group not in data.columns:
        raise ValueError(f"Grouping column {group!r} not found in data")
    return pd.Index(pd.unique(data[group].astype(str))).sort_values().tolist()


def build_design(formula, data, levels=None, random=True):
    """
    Build the fixed- and random-effect design for a data frame.

    Parameters
    ----------
    formula : Formula or str
    data : pandas.DataFrame
    levels : dict or None
        Group -> list of level labels from a previous fit. When given,
        rows with labels outside the list get index -1.
    random : bool
        Build the random-effect blocks. With False the grouping columns
        are not read and ``blocks`` is empty.

    Returns
    -------
    dict with keys:
        X       : ndarray, shape (n, p) fixed-effect design
        blocks  : list of dicts (group, name, values, index), one per
                  random-effect standard deviation
        levels  : group -> list of level labels
        y       : response array, or None if the column is absent
    """
    if isinstance(formula, str):
        formula = parse_formula(formula)
    X = np.empty((len(data), 0))
    if formula.fixed_names:
        X = np.column_stack([term_values(data, t) for t in formula.fixed_names])

    random_terms = formula.random if random else []
    if levels is None:
        levels = {r.group: group_levels(data, r.group) for r in random_terms}
    blocks = []
    for rterm in random_terms:
        if rterm.group not in data.columns:
            raise ValueError(f"Grouping column {rterm.group!r} not found in data")
        index = pd.Index(levels[rterm.group]).get_indexer(
            data[rterm.group].astype(str))
        for name in rterm.components:
            blocks.append(dict(
                group=rterm.group,
                name=name,
                values=term_values(data, name),
                index=index,
            ))

    y = None
    if formula.response in data.columns:
        y = data[formula.response].to_numpy(dtype=float)
    return dict(X=X, blocks=blocks, levels=levels, y=y)


def random_design_matrix(blocks, levels):
    """
    Dense random-effect design Z with one column per (block, level).

    Rows whose level index is -1 (unseen groups) get zero columns.

    Returns
    -------
    Z : ndarray, shape (n, q)
    slices : list of slice objects locating each block's columns in Z
    """
    n = len(blocks[0]["values"]) if blocks else 0
    sizes = [len(levels[b["group"]]) for b in blocks]
    Z = np.zeros((n, sum(sizes)))
    slices, start = [], 0
    rows = np.arange(n)
    for block, size in zip(blocks, sizes):
        ok = block["index"] >= 0
        Z[rows[ok], start + block["index"][ok]] = block["values"][ok]
        slices.append(slice(start, start + size))
        start += size
    return Z, slices


def sd_names(blocks):
    """Labels for the random-effect standard deviations."""
    return [f"{b['group']}: {b['name']}" for b in blocks]
