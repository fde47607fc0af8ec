"""Similarity-weighted, mean-centred rating prediction for one user or a batch."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Hashable, Mapping, Sequence

import numpy as np
import pandas as pd

from .errors import CollaborativeFilteringError, InsufficientDataError, NoNeighborsError
from .matrix import RatingMatrix, UserSummary
from .similarity import Decay, DecayMode, lookup_similarity, similarity


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictionConfig:
    use_sd_scaling: bool = False
    decay: Decay = field(default_factory=Decay)
    neighbor_subset_size: int | None = None
    fallback_to_mean: bool = False
    n_jobs: int = 1

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "PredictionConfig":
        """Build from the `prediction` (+ optional `similarity`) config sections."""
        subset = raw.get("neighbor_subset_size")
        return cls(
            use_sd_scaling=bool(raw.get("use_sd_scaling", False)),
            decay=Decay(
                mode=DecayMode.parse(raw.get("mode", DecayMode.UNWEIGHTED)),
                alpha=float(raw.get("alpha", 1.0)),
            ),
            neighbor_subset_size=(None if subset in (None, "", 0) else int(subset)),
            fallback_to_mean=bool(raw.get("fallback_to_mean", False)),
            n_jobs=int(raw.get("n_jobs", 1)),
        )

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "use_sd_scaling": self.use_sd_scaling,
            "alpha": self.decay.alpha,
            "mode": self.decay.mode,
            "neighbor_subset_size": self.neighbor_subset_size,
            "fallback_to_mean": self.fallback_to_mean,
            "n_jobs": self.n_jobs,
        }


@dataclass(frozen=True)
class _Neighbor:
    user: Hashable
    rating: float
    summary: UserSummary
    weight: float


def _candidate_pool(user: Hashable, item: Hashable, training: RatingMatrix) -> list[tuple[Hashable, float, UserSummary]]:
    """Other users who rated `item` and whose ratings vary."""
    column = training.column(item)
    pool = []
    for other, value in column.items():
        if other == user:
            continue
        summary = training.summary(other)
        if summary.has_variance:
            pool.append((other, float(value), summary))
    return pool


def _weighted_neighbors(
    user: Hashable,
    item: Hashable,
    training: RatingMatrix,
    *,
    similarity_matrix: pd.DataFrame | None,
    decay: Decay,
    neighbor_subset_size: int | None,
    rng: np.random.Generator | None,
) -> tuple[UserSummary, list[_Neighbor]]:
    user_row = training.row(user)
    if user_row.empty:
        raise InsufficientDataError(f"User {user!r} has no ratings in the training matrix")
    user_stats = training.summary(user)

    pool = _candidate_pool(user, item, training)
    if not pool:
        raise InsufficientDataError(f"No candidate neighbours rated item {item!r} (user {user!r})")

    if neighbor_subset_size is not None:
        k = int(neighbor_subset_size)
        if k <= 0:
            raise ValueError(f"neighbor_subset_size must be positive, got {neighbor_subset_size!r}")
        if k > len(pool):
            raise InsufficientDataError(
                f"neighbor_subset_size={k} exceeds the {len(pool)} candidates for item {item!r} (user {user!r})"
            )
        gen = rng if rng is not None else np.random.default_rng()
        picked = gen.choice(len(pool), size=k, replace=False)
        pool = [pool[int(i)] for i in picked]

    neighbors = []
    for other, value, summary in pool:
        if similarity_matrix is not None:
            w = lookup_similarity(similarity_matrix, user, other)
        else:
            w = similarity(user_row, training.row(other), decay=decay)
        neighbors.append(_Neighbor(user=other, rating=value, summary=summary, weight=w))
    return user_stats, neighbors


def _aggregate(
    user: Hashable,
    item: Hashable,
    user_stats: UserSummary,
    neighbors: list[_Neighbor],
    use_sd_scaling: bool,
) -> float:
    weights = np.array([n.weight for n in neighbors], dtype=np.float64)
    deviations = np.array([n.rating - n.summary.mean for n in neighbors], dtype=np.float64)
    if use_sd_scaling:
        deviations = deviations / np.array([n.summary.sd for n in neighbors], dtype=np.float64)

    denom = float(np.abs(weights).sum())
    if denom == 0.0:
        raise NoNeighborsError(user, item, n_candidates=len(neighbors))

    offset = float(np.dot(weights, deviations)) / denom
    if use_sd_scaling:
        offset *= user_stats.sd
    return user_stats.mean + offset


def predict_rating(
    user: Hashable,
    item: Hashable,
    training: RatingMatrix,
    *,
    similarity_matrix: pd.DataFrame | None = None,
    use_sd_scaling: bool = False,
    decay: Decay | None = None,
    neighbor_subset_size: int | None = None,
    rng: np.random.Generator | None = None,
) -> float:
    """Mean-centred, similarity-weighted prediction of `user`'s rating for `item`.

    predicted = mean_u + sum(s * (r_v - mean_v)) / sum(|s|)

    With `use_sd_scaling` each deviation is divided by sd_v and the offset is
    multiplied by sd_u. Neighbours are the other users who rated `item` and
    have non-zero rating variance. When `similarity_matrix` is given the
    weights are looked up there instead of being recomputed; the same formula
    applies to both sources.

    Raises
    ------
    UnknownKeyError
        `user`/`item` not in `training`, or a pair missing from `similarity_matrix`.
    InsufficientDataError
        The user has no ratings, nobody else rated the item, or the neighbour
        subset is larger than the candidate pool.
    NoNeighborsError
        Every neighbour weight is zero.
    """
    decay = decay if decay is not None else Decay()
    user_stats, neighbors = _weighted_neighbors(
        user,
        item,
        training,
        similarity_matrix=similarity_matrix,
        decay=decay,
        neighbor_subset_size=neighbor_subset_size,
        rng=rng,
    )
    return _aggregate(user, item, user_stats, neighbors, use_sd_scaling)


def neighbor_contributions(
    user: Hashable,
    item: Hashable,
    training: RatingMatrix,
    *,
    similarity_matrix: pd.DataFrame | None = None,
    use_sd_scaling: bool = False,
    decay: Decay | None = None,
    neighbor_subset_size: int | None = None,
    rng: np.random.Generator | None = None,
) -> pd.DataFrame:
    """Per-neighbour weights and deviations behind a prediction, strongest first.

    Pass the same `neighbor_subset_size` and an identically seeded `rng` as
    the matching `predict_rating` call to get the neighbours it actually used.
    """
    _, neighbors = _weighted_neighbors(
        user,
        item,
        training,
        similarity_matrix=similarity_matrix,
        decay=decay if decay is not None else Decay(),
        neighbor_subset_size=neighbor_subset_size,
        rng=rng,
    )
    df = pd.DataFrame(
        {
            "userID": [n.user for n in neighbors],
            "rating": [n.rating for n in neighbors],
            "mean": [n.summary.mean for n in neighbors],
            "sd": [n.summary.sd for n in neighbors],
            "similarity": [n.weight for n in neighbors],
        }
    )
    df["deviation"] = df["rating"] - df["mean"]
    if use_sd_scaling:
        df["deviation"] = df["deviation"] / df["sd"]
    order = df["similarity"].abs().sort_values(ascending=False, kind="mergesort").index
    return df.loc[order].reset_index(drop=True)


@dataclass(frozen=True)
class PredictionBatch:
    """Predictions aligned with the input (user, item) pairs.

    A failed position holds `None` and its exception sits in `errors`.
    Positions answered with the user's mean after a `NoNeighborsError` are in
    `fallbacks`.
    """

    users: tuple[Hashable, ...]
    items: tuple[Hashable, ...]
    predictions: tuple[float | None, ...]
    errors: Mapping[int, CollaborativeFilteringError] = field(default_factory=dict)
    fallbacks: frozenset[int] = frozenset()

    def __len__(self) -> int:
        return len(self.predictions)

    @property
    def n_failed(self) -> int:
        return len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_first(self) -> None:
        if self.errors:
            raise self.errors[min(self.errors)]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "userID": list(self.users),
                "gameID": list(self.items),
                "prediction": [np.nan if p is None else p for p in self.predictions],
                "fallback": [i in self.fallbacks for i in range(len(self))],
                "error": [
                    (type(self.errors[i]).__name__ + ": " + str(self.errors[i])) if i in self.errors else None
                    for i in range(len(self))
                ],
            }
        )


def predict(
    users: Sequence[Hashable],
    training: RatingMatrix,
    items: Sequence[Hashable],
    *,
    similarity_matrix: pd.DataFrame | None = None,
    use_sd_scaling: bool = False,
    alpha: float = 1.0,
    mode: DecayMode | str = DecayMode.UNWEIGHTED,
    neighbor_subset_size: int | None = None,
    seed: int | None = None,
    n_jobs: int = 1,
    fallback_to_mean: bool = False,
) -> PredictionBatch:
    """Predict one rating per (users[i], items[i]) pair.

    Failures are isolated per position. Each position draws neighbour subsets
    from its own generator spawned from `seed`, so the output does not depend
    on `n_jobs`.
    """
    users = list(users)
    items = list(items)
    if len(users) != len(items):
        raise ValueError(f"users ({len(users)}) and items ({len(items)}) must be parallel lists")

    decay = Decay(mode=mode, alpha=alpha)
    children = np.random.SeedSequence(seed).spawn(len(users))

    def _one(i: int) -> tuple[float | None, CollaborativeFilteringError | None, bool]:
        try:
            value = predict_rating(
                users[i],
                items[i],
                training,
                similarity_matrix=similarity_matrix,
                use_sd_scaling=use_sd_scaling,
                decay=decay,
                neighbor_subset_size=neighbor_subset_size,
                rng=np.random.default_rng(children[i]),
            )
            return value, None, False
        except NoNeighborsError as exc:
            if fallback_to_mean:
                return training.summary(users[i]).mean, None, True
            return None, exc, False
        except CollaborativeFilteringError as exc:
            return None, exc, False

    if int(n_jobs) > 1 and len(users) > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as pool:
            results = list(pool.map(_one, range(len(users))))
    else:
        results = [_one(i) for i in range(len(users))]

    predictions = tuple(r[0] for r in results)
    errors = {i: r[1] for i, r in enumerate(results) if r[1] is not None}
    fallbacks = frozenset(i for i, r in enumerate(results) if r[2])

    if errors or fallbacks:
        logger.info(
            "Predicted %d/%d pairs (failed=%d, mean fallbacks=%d)",
            len(users) - len(errors),
            len(users),
            len(errors),
            len(fallbacks),
        )
    for i, exc in sorted(errors.items())[:5]:
        logger.debug("Prediction failed for user=%r item=%r: %s", users[i], items[i], exc)

    return PredictionBatch(
        users=tuple(users),
        items=tuple(items),
        predictions=predictions,
        errors=errors,
        fallbacks=fallbacks,
    )
