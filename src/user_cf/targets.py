"""Hold out one rating per user to get ground truth for evaluation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Hashable, Mapping, Sequence

import numpy as np
import pandas as pd

from ..utils import make_rng
from .errors import InsufficientDataError, UnknownKeyError
from .matrix import RatingMatrix


logger = logging.getLogger(__name__)


class TargetMode(str, Enum):
    RANDOM = "random"
    SELECTED = "selected"


@dataclass(frozen=True)
class Holdout:
    user: Hashable
    item: Hashable
    rating: float


@dataclass(frozen=True)
class TargetSet:
    """Held-out cells plus the matrix they were removed from.

    `original` still contains every holdout; `reduced` has them masked and is
    what predictions must be computed on.
    """

    holdouts: tuple[Holdout, ...]
    original: RatingMatrix
    reduced: RatingMatrix

    @property
    def users(self) -> list[Hashable]:
        return [h.user for h in self.holdouts]

    @property
    def items(self) -> list[Hashable]:
        return [h.item for h in self.holdouts]

    @property
    def truths(self) -> list[float]:
        return [h.rating for h in self.holdouts]

    def __len__(self) -> int:
        return len(self.holdouts)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {"userID": self.users, "gameID": self.items, "rating": self.truths},
        )


def _selected_items(
    users: Sequence[Hashable],
    target_items: Mapping[Hashable, Hashable] | Sequence[Hashable] | None,
) -> list[Hashable]:
    if target_items is None:
        raise ValueError("mode='selected' requires target_items")
    if isinstance(target_items, Mapping):
        missing = [u for u in users if u not in target_items]
        if missing:
            raise ValueError(f"target_items has no entry for users: {missing[:10]}")
        return [target_items[u] for u in users]
    items = list(target_items)
    if len(items) != len(users):
        raise ValueError(f"target_items has {len(items)} entries for {len(users)} users")
    return items


def get_targets(
    matrix: RatingMatrix,
    mode: TargetMode | str = TargetMode.RANDOM,
    target_items: Mapping[Hashable, Hashable] | Sequence[Hashable] | None = None,
    *,
    users: Sequence[Hashable] | None = None,
    rng: np.random.Generator | int | None = None,
) -> TargetSet:
    """Withhold one rated game per user.

    random:   a uniformly chosen rated game per row, drawn from `rng`.
    selected: the caller names the game (mapping user -> game, or a sequence
              parallel to `users`); it must be rated by that user.

    The input matrix is not modified.
    """
    mode = TargetMode(mode)
    users = list(users) if users is not None else matrix.users
    if len(set(users)) != len(users):
        raise ValueError("users must be unique; one holdout per user")

    holdouts: list[Holdout] = []
    if mode is TargetMode.RANDOM:
        gen = make_rng(rng)
        for user in users:
            row = matrix.row(user)
            if row.empty:
                raise InsufficientDataError(f"User {user!r} has no ratings to hold out")
            pos = int(gen.integers(row.size))
            holdouts.append(Holdout(user=user, item=row.index[pos], rating=float(row.iloc[pos])))
    else:
        items = _selected_items(users, target_items)
        for user, item in zip(users, items):
            value = matrix.rating(user, item)
            if value is None:
                raise UnknownKeyError(f"User {user!r} has no rating for item {item!r} to hold out")
            holdouts.append(Holdout(user=user, item=item, rating=value))

    reduced = matrix.without((h.user, h.item) for h in holdouts)
    logger.debug("Held out %d ratings (mode=%s)", len(holdouts), mode.value)
    return TargetSet(holdouts=tuple(holdouts), original=matrix, reduced=reduced)
