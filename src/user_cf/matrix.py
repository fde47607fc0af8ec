"""Sparse user x game rating matrix.

Missing cells are `pd.NA` in a nullable `Float64` frame. Anything handed to
arithmetic (`row`, `column`) contains rated cells only, so an absent rating
can never leak into a mean or a correlation as a number.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Hashable, Iterable, Sequence

import pandas as pd

from .errors import UnknownKeyError


RATING_DTYPE = "Float64"


@dataclass(frozen=True)
class UserSummary:
    """Count, mean and sample standard deviation of one user's rated cells."""

    n: int
    mean: float
    sd: float

    @property
    def has_variance(self) -> bool:
        return self.sd > 0.0


def user_summary(row: pd.Series) -> UserSummary:
    """Summarise a rating row; `sd` is 0.0 below two ratings, `mean` is NaN for none."""
    values = row.dropna().astype("float64")
    n = int(values.size)
    if n == 0:
        return UserSummary(n=0, mean=math.nan, sd=0.0)
    mean = float(values.mean())
    sd = float(values.std(ddof=1)) if n >= 2 else 0.0
    if math.isnan(sd):
        sd = 0.0
    return UserSummary(n=n, mean=mean, sd=sd)


class RatingMatrix:
    """Users on the index, games on the columns, `pd.NA` where no rating exists."""

    def __init__(self, frame: pd.DataFrame) -> None:
        if frame.index.has_duplicates:
            raise ValueError("rating matrix has duplicate user ids")
        if frame.columns.has_duplicates:
            raise ValueError("rating matrix has duplicate item ids")
        self._frame = frame.astype(RATING_DTYPE)

    @classmethod
    def from_long(
        cls,
        ratings: pd.DataFrame,
        *,
        user_col: str = "userID",
        item_col: str = "gameID",
        rating_col: str = "rating",
    ) -> "RatingMatrix":
        """Reshape (user, item, rating) triples into one row per user."""
        required = {user_col, item_col, rating_col}
        missing = required - set(ratings.columns)
        if missing:
            raise ValueError(f"ratings missing required columns: {sorted(missing)}")

        df = ratings[[user_col, item_col, rating_col]].dropna()
        if df.duplicated(subset=[user_col, item_col]).any():
            raise ValueError(f"ratings contain duplicate ({user_col}, {item_col}) rows")

        wide = df.pivot(index=user_col, columns=item_col, values=rating_col)
        wide = wide.sort_index(axis=0).sort_index(axis=1)
        return cls(wide)

    @classmethod
    def from_dict(cls, rows: dict[Hashable, dict[Hashable, float | None]]) -> "RatingMatrix":
        """Build from {user: {item: rating}}; items absent from a row are missing."""
        frame = pd.DataFrame.from_dict(rows, orient="index")
        return cls(frame)

    # ----- shape -----

    @property
    def users(self) -> list[Hashable]:
        return self._frame.index.tolist()

    @property
    def items(self) -> list[Hashable]:
        return self._frame.columns.tolist()

    @property
    def shape(self) -> tuple[int, int]:
        return self._frame.shape

    def __len__(self) -> int:
        return int(self._frame.shape[0])

    def __contains__(self, user: object) -> bool:
        return user in self._frame.index

    def __repr__(self) -> str:
        n_users, n_items = self.shape
        return f"RatingMatrix(users={n_users}, items={n_items}, ratings={self.n_observed()})"

    def has_item(self, item: Hashable) -> bool:
        return item in self._frame.columns

    def n_observed(self) -> int:
        return int(self._frame.notna().to_numpy().sum())

    # ----- access -----

    def _require_user(self, user: Hashable) -> None:
        if user not in self._frame.index:
            raise UnknownKeyError(f"Unknown user: {user!r}")

    def _require_item(self, item: Hashable) -> None:
        if item not in self._frame.columns:
            raise UnknownKeyError(f"Unknown item: {item!r}")

    def row(self, user: Hashable) -> pd.Series:
        """Rated cells of one user, as float64 keyed by item."""
        self._require_user(user)
        return self._frame.loc[user].dropna().astype("float64")

    def column(self, item: Hashable) -> pd.Series:
        """Ratings given to one item, as float64 keyed by user."""
        self._require_item(item)
        return self._frame[item].dropna().astype("float64")

    def rating(self, user: Hashable, item: Hashable) -> float | None:
        self._require_user(user)
        self._require_item(item)
        value = self._frame.at[user, item]
        if pd.isna(value):
            return None
        return float(value)

    def n_ratings(self, user: Hashable) -> int:
        self._require_user(user)
        return int(self._frame.loc[user].notna().sum())

    def summary(self, user: Hashable) -> UserSummary:
        return user_summary(self.row(user))

    # ----- derived matrices -----

    def without(self, cells: Iterable[tuple[Hashable, Hashable]]) -> "RatingMatrix":
        """Copy with the given (user, item) cells set to missing."""
        frame = self._frame.copy()
        for user, item in cells:
            self._require_user(user)
            self._require_item(item)
            frame.at[user, item] = pd.NA
        return RatingMatrix(frame)

    def subset(self, users: Sequence[Hashable]) -> "RatingMatrix":
        for user in users:
            self._require_user(user)
        return RatingMatrix(self._frame.loc[list(users)])

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def describe(self) -> dict[str, Any]:
        n_users, n_items = self.shape
        n_obs = self.n_observed()
        cells = n_users * n_items
        return {
            "n_users": n_users,
            "n_items": n_items,
            "n_ratings": n_obs,
            "density": (n_obs / cells) if cells else 0.0,
        }
