"""Pearson user similarity with rating-count decay, and the O(n^2) precompute.

An undefined correlation (fewer than two common games, or a constant side)
scores 0.0. It is never an error.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Hashable, Sequence

import numpy as np
import pandas as pd

from .errors import UnknownKeyError
from .matrix import RatingMatrix, user_summary


logger = logging.getLogger(__name__)

USER_ID_COLUMN = "userID"


class DecayMode(str, Enum):
    UNWEIGHTED = "unweighted"
    LINEAR = "linear"
    INVERSE_POWER = "inverse-power"
    EXPONENTIAL = "exponential"

    @classmethod
    def parse(cls, value: "DecayMode | str") -> "DecayMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown decay mode {value!r} (expected one of: {allowed})") from None


@dataclass(frozen=True)
class Decay:
    """How much to shrink a correlation when two users rated very different numbers of games."""

    mode: DecayMode = DecayMode.UNWEIGHTED
    alpha: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", DecayMode.parse(self.mode))
        alpha = float(self.alpha)
        if not math.isfinite(alpha) or alpha < 0.0:
            raise ValueError(f"alpha must be a non-negative number, got {self.alpha!r}")
        object.__setattr__(self, "alpha", alpha)

    def apply(self, r: float, count_diff: int) -> float:
        d = abs(int(count_diff))
        match self.mode:
            case DecayMode.UNWEIGHTED:
                return r
            case DecayMode.INVERSE_POWER:
                return r / (d + 1) ** self.alpha
            case DecayMode.EXPONENTIAL:
                return r * math.exp(-self.alpha * d)
            case DecayMode.LINEAR:
                return r * self.alpha / (d + 1)
        raise AssertionError(f"unhandled decay mode: {self.mode!r}")

    def __str__(self) -> str:
        return f"{self.mode.value}(alpha={self.alpha:g})"


def pearson_common(row1: pd.Series, row2: pd.Series) -> float:
    """Pearson correlation over the games both users rated; 0.0 when undefined."""
    a = row1.dropna()
    b = row2.dropna()
    common = a.index.intersection(b.index)
    if len(common) < 2:
        return 0.0

    # Fixed item order keeps the float sums identical for (a, b) and (b, a).
    common = common.sort_values()
    x = a.loc[common].to_numpy(dtype=np.float64)
    y = b.loc[common].to_numpy(dtype=np.float64)

    # np.ptp instead of the centred norms: a constant column can leave float
    # residue after mean-centring.
    if np.ptp(x) == 0.0 or np.ptp(y) == 0.0:
        return 0.0

    xc = x - x.mean()
    yc = y - y.mean()
    denom = math.sqrt(float(np.dot(xc, xc)) * float(np.dot(yc, yc)))
    if denom == 0.0:
        return 0.0
    r = float(np.dot(xc, yc)) / denom
    return float(min(1.0, max(-1.0, r)))


def count_difference(row1: pd.Series, row2: pd.Series) -> int:
    """|#rated(row1) - #rated(row2)| over the full rows, not only the common games."""
    return abs(int(row1.notna().sum()) - int(row2.notna().sum()))


def similarity(
    row1: pd.Series,
    row2: pd.Series,
    alpha: float = 1.0,
    mode: DecayMode | str = DecayMode.UNWEIGHTED,
    *,
    decay: Decay | None = None,
) -> float:
    """Decayed Pearson similarity of two rating rows (item -> rating, NaN/NA = missing)."""
    decay = decay if decay is not None else Decay(mode=mode, alpha=alpha)
    r = pearson_common(row1, row2)
    if r == 0.0:
        return 0.0
    return decay.apply(r, count_difference(row1, row2))


# ---------- precomputed matrix ----------


def build_similarity_matrix(
    matrix: RatingMatrix,
    users: Sequence[Hashable] | None = None,
    *,
    decay: Decay | None = None,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Square user x user similarity table, diagonal 1.

    This is O(n^2) pair evaluations, each linear in the number of shared
    games; for a few thousand users it dominates the whole pipeline. Each
    unordered pair is evaluated once and mirrored. Users without rating
    variance score 0 against everyone (their correlation is undefined).
    The table is a snapshot: rebuild it when the rating matrix changes.
    """
    decay = decay if decay is not None else Decay()
    ids = list(users) if users is not None else matrix.users
    if len(set(ids)) != len(ids):
        raise ValueError("users must be unique")

    rows = [matrix.row(u) for u in ids]
    usable = [user_summary(r).has_variance for r in rows]
    n = len(ids)
    n_pairs = n * (n - 1) // 2
    logger.info(
        "Building similarity matrix: users=%d pairs=%d decay=%s n_jobs=%d",
        n,
        n_pairs,
        decay,
        int(n_jobs),
    )

    def _upper_row(i: int) -> tuple[int, np.ndarray]:
        out = np.zeros(n - i - 1, dtype=np.float64)
        if not usable[i]:
            return i, out
        for k, j in enumerate(range(i + 1, n)):
            if usable[j]:
                out[k] = similarity(rows[i], rows[j], decay=decay)
        return i, out

    values = np.eye(n, dtype=np.float64)
    log_every = max(1, n // 10)
    if int(n_jobs) > 1 and n > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as pool:
            results = pool.map(_upper_row, range(n))
            for done, (i, upper) in enumerate(results, start=1):
                values[i, i + 1 :] = upper
                values[i + 1 :, i] = upper
                if done % log_every == 0:
                    logger.info("Similarity rows done: %d/%d", done, n)
    else:
        for i in range(n):
            _, upper = _upper_row(i)
            values[i, i + 1 :] = upper
            values[i + 1 :, i] = upper
            if (i + 1) % log_every == 0:
                logger.info("Similarity rows done: %d/%d", i + 1, n)

    index = pd.Index(ids, name=USER_ID_COLUMN)
    return pd.DataFrame(values, index=index, columns=pd.Index(ids))


def lookup_similarity(sim: pd.DataFrame, u: Hashable, v: Hashable) -> float:
    """s(u, v) from a precomputed table; a NaN cell counts as an undefined (0) score."""
    try:
        value = sim.at[u, v]
    except KeyError as exc:
        raise UnknownKeyError(f"No similarity entry for ({u!r}, {v!r})") from exc
    if pd.isna(value):
        return 0.0
    return float(value)


def save_similarity_matrix(sim: pd.DataFrame, path: Path) -> Path:
    """Write the table as CSV: a `userID` column plus one column per user."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out = sim.copy()
    out.index.name = None
    out.insert(0, USER_ID_COLUMN, sim.index.to_numpy())
    out.to_csv(path, index=False)
    logger.info("Saved similarity matrix users=%d to %s", len(sim), path)
    return path


def load_similarity_matrix(path: Path) -> pd.DataFrame:
    """Read a table written by `save_similarity_matrix` (or any table of that shape)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"similarity matrix not found: {path}")

    df = pd.read_csv(path)
    if USER_ID_COLUMN not in df.columns:
        raise ValueError(f"{path.name} must contain a {USER_ID_COLUMN!r} column")
    df = df.set_index(USER_ID_COLUMN)

    # CSV headers come back as strings; align them with the id column's dtype.
    try:
        columns = pd.Index(df.columns).astype(df.index.dtype)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{path.name}: column labels do not match {USER_ID_COLUMN} values") from exc
    df.columns = columns

    if df.index.has_duplicates or df.columns.has_duplicates:
        raise ValueError(f"{path.name}: duplicate user ids")
    if set(df.index) != set(df.columns):
        raise ValueError(f"{path.name}: similarity table must be square over the same user ids")

    df = df.loc[:, list(df.index)].astype("float64")
    df.index.name = USER_ID_COLUMN
    return df
