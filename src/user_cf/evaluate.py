"""RMSE and Monte-Carlo cross-validation over random holdouts."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd
from sklearn import model_selection
from sklearn.metrics import mean_squared_error

from .errors import InsufficientDataError
from .matrix import RatingMatrix
from .predict import PredictionConfig, predict
from .targets import TargetMode, get_targets


logger = logging.getLogger(__name__)


def _as_float_array(values: Iterable[float | None]) -> np.ndarray:
    return np.array([np.nan if v is None else float(v) for v in values], dtype=np.float64)


def rmse(predicted: Sequence[float | None], actual: Sequence[float | None]) -> float:
    """sqrt(mean((predicted - actual)^2)) over positions where both are defined.

    Returns NaN when no position has both values.
    """
    p = _as_float_array(predicted)
    a = _as_float_array(actual)
    if p.shape != a.shape:
        raise ValueError(f"predicted ({p.size}) and actual ({a.size}) must have the same length")
    mask = np.isfinite(p) & np.isfinite(a)
    if not mask.any():
        return math.nan
    return float(np.sqrt(mean_squared_error(a[mask], p[mask])))


@dataclass(frozen=True)
class EvaluationConfig:
    rounds: int = 10
    n_test_users: int = 50
    seed: int | None = 42
    min_user_ratings: int = 2
    exclude_failed_rounds: bool = True
    prediction: PredictionConfig = field(default_factory=PredictionConfig)

    def __post_init__(self) -> None:
        if int(self.rounds) < 1:
            raise ValueError(f"rounds must be >= 1, got {self.rounds!r}")
        if int(self.n_test_users) < 1:
            raise ValueError(f"n_test_users must be >= 1, got {self.n_test_users!r}")
        if int(self.min_user_ratings) < 2:
            # A test user needs at least one rating left after the holdout.
            raise ValueError(f"min_user_ratings must be >= 2, got {self.min_user_ratings!r}")

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], prediction: PredictionConfig | None = None) -> "EvaluationConfig":
        seed = raw.get("seed", 42)
        return cls(
            rounds=int(raw.get("rounds", 10)),
            n_test_users=int(raw.get("n_test_users", 50)),
            seed=(None if seed is None else int(seed)),
            min_user_ratings=int(raw.get("min_user_ratings", 2)),
            exclude_failed_rounds=bool(raw.get("exclude_failed_rounds", True)),
            prediction=prediction if prediction is not None else PredictionConfig(),
        )


@dataclass(frozen=True)
class RoundResult:
    round: int
    rmse: float
    n_users: int
    n_failed: int
    n_fallbacks: int
    excluded: bool


@dataclass(frozen=True)
class EvaluationReport:
    rounds: tuple[RoundResult, ...]

    @property
    def rmses(self) -> list[float]:
        """Per-round RMSE of the rounds that count toward the mean."""
        return [r.rmse for r in self.rounds if not r.excluded]

    @property
    def mean_rmse(self) -> float:
        kept = self.rmses
        if not kept:
            return math.nan
        return float(np.mean(kept))

    @property
    def n_excluded(self) -> int:
        return sum(1 for r in self.rounds if r.excluded)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.__dict__ for r in self.rounds])

    def to_dict(self) -> dict[str, Any]:
        def _clean(x: float) -> float | None:
            return None if math.isnan(x) else float(x)

        return {
            "mean_rmse": _clean(self.mean_rmse),
            "n_rounds": len(self.rounds),
            "n_excluded": self.n_excluded,
            "rounds": [{**r.__dict__, "rmse": _clean(r.rmse)} for r in self.rounds],
        }


def eligible_users(matrix: RatingMatrix, min_user_ratings: int = 2) -> list[Hashable]:
    return [u for u in matrix.users if matrix.n_ratings(u) >= int(min_user_ratings)]


def sample_test_users(users: Sequence[Hashable], n: int, seed: int) -> list[Hashable]:
    users = list(users)
    if n > len(users):
        raise InsufficientDataError(f"Requested {n} test users but only {len(users)} are eligible")
    if n == len(users):
        return users
    _, test = model_selection.train_test_split(users, test_size=int(n), random_state=int(seed))
    return list(test)


def evaluate_round(
    matrix: RatingMatrix,
    users: Sequence[Hashable],
    *,
    prediction: PredictionConfig,
    target_seed: int | None = None,
    predict_seed: int | None = None,
    similarity_matrix: pd.DataFrame | None = None,
    round_index: int = 0,
    exclude_failed: bool = True,
) -> RoundResult:
    """Hold out one random rating per user, predict it from the rest, score RMSE."""
    targets = get_targets(matrix, TargetMode.RANDOM, users=users, rng=target_seed)
    batch = predict(
        targets.users,
        targets.reduced,
        targets.items,
        similarity_matrix=similarity_matrix,
        seed=predict_seed,
        **prediction.as_kwargs(),
    )
    value = rmse(batch.predictions, targets.truths)
    excluded = math.isnan(value) or (exclude_failed and batch.n_failed > 0)
    return RoundResult(
        round=int(round_index),
        rmse=value,
        n_users=len(targets),
        n_failed=batch.n_failed,
        n_fallbacks=len(batch.fallbacks),
        excluded=bool(excluded),
    )


def cross_validate(
    matrix: RatingMatrix,
    cfg: EvaluationConfig | None = None,
    *,
    similarity_matrix: pd.DataFrame | None = None,
) -> EvaluationReport:
    """Repeat {sample users -> hold out -> predict -> RMSE} `cfg.rounds` times.

    Every round draws its user sample, holdouts and neighbour subsets from
    seeds spawned off `cfg.seed`, so a fixed seed reproduces the report.
    Rounds with an undefined RMSE, or (by default) with any failed
    prediction, are reported but left out of `mean_rmse`.
    """
    cfg = cfg if cfg is not None else EvaluationConfig()
    pool = eligible_users(matrix, cfg.min_user_ratings)
    if len(pool) < int(cfg.n_test_users):
        raise InsufficientDataError(
            f"Only {len(pool)} users have >= {cfg.min_user_ratings} ratings; "
            f"cannot sample {cfg.n_test_users} test users"
        )

    logger.info(
        "Cross-validation: rounds=%d n_test_users=%d eligible=%d decay=%s sd_scaling=%s",
        int(cfg.rounds),
        int(cfg.n_test_users),
        len(pool),
        cfg.prediction.decay,
        cfg.prediction.use_sd_scaling,
    )

    results = []
    for k, seq in enumerate(np.random.SeedSequence(cfg.seed).spawn(int(cfg.rounds))):
        sample_seed, target_seed, predict_seed = (int(s) for s in seq.generate_state(3))
        users = sample_test_users(pool, int(cfg.n_test_users), sample_seed)
        result = evaluate_round(
            matrix,
            users,
            prediction=cfg.prediction,
            target_seed=target_seed,
            predict_seed=predict_seed,
            similarity_matrix=similarity_matrix,
            round_index=k,
            exclude_failed=cfg.exclude_failed_rounds,
        )
        logger.info(
            "Round %d: rmse=%.4f failed=%d fallbacks=%d%s",
            k,
            result.rmse,
            result.n_failed,
            result.n_fallbacks,
            " (excluded)" if result.excluded else "",
        )
        results.append(result)

    report = EvaluationReport(rounds=tuple(results))
    logger.info("Mean RMSE over %d/%d rounds: %.4f", len(report.rmses), len(results), report.mean_rmse)
    return report
