from __future__ import annotations

import math

import numpy as np
import pytest

from src.user_cf.errors import (
    CollaborativeFilteringError,
    InsufficientDataError,
    NoNeighborsError,
    UnknownKeyError,
)
from src.user_cf.matrix import RatingMatrix
from src.user_cf.predict import PredictionConfig, neighbor_contributions, predict, predict_rating
from src.user_cf.similarity import Decay, build_similarity_matrix, similarity
from src.user_cf.targets import get_targets


def test_worked_example_has_no_usable_neighbour(three_user_matrix: RatingMatrix) -> None:
    """Holding out userA/item4 leaves userC as the only candidate, sharing one game with A."""
    targets = get_targets(three_user_matrix, "selected", ["item4"], users=["userA"])
    reduced = targets.reduced
    assert targets.truths == [4.0]

    # userB never rated item4, userC shares only item2 with the reduced userA.
    contrib = neighbor_contributions("userA", "item4", reduced)
    assert contrib["userID"].tolist() == ["userC"]
    assert contrib["similarity"].tolist() == [0.0]

    with pytest.raises(NoNeighborsError) as excinfo:
        predict_rating("userA", "item4", reduced, decay=Decay("unweighted"))
    assert excinfo.value.user == "userA"
    assert excinfo.value.item == "item4"

    batch = predict(["userA"], reduced, ["item4"], fallback_to_mean=True)
    assert batch.predictions == (pytest.approx(4.0),)
    assert batch.fallbacks == frozenset({0})
    assert batch.ok


@pytest.mark.parametrize("mode", ["unweighted", "linear", "inverse-power", "exponential"])
@pytest.mark.parametrize("c_item1, sign", [(4.0, 1.0), (2.0, -1.0)])
def test_single_neighbour_collapses_to_its_deviation(mode: str, c_item1: float, sign: float) -> None:
    """With one neighbour, s / |s| = sign(s): prediction = mean_A +/- (r_C - mean_C)."""
    m = RatingMatrix.from_dict(
        {
            "userA": {"item1": 5.0, "item2": 3.0, "item4": 4.0},
            "userB": {"item1": 4.0, "item2": 3.0, "item3": 5.0},
            "userC": {"item1": c_item1, "item2": 2.0 if sign > 0 else 4.0, "item3": 4.0, "item4": 5.0},
        }
    )
    reduced = get_targets(m, "selected", ["item4"], users=["userA"]).reduced

    s = similarity(reduced.row("userA"), reduced.row("userC"), alpha=1.0, mode=mode)
    assert s != 0.0
    assert math.copysign(1.0, s) == sign

    mean_a = reduced.summary("userA").mean
    mean_c = reduced.summary("userC").mean
    expected = mean_a + sign * (5.0 - mean_c)

    got = predict_rating("userA", "item4", reduced, decay=Decay(mode, 1.0))
    assert got == pytest.approx(expected)


def test_general_weighted_formula_with_and_without_sd_scaling(random_matrix: RatingMatrix) -> None:
    user = random_matrix.users[0]
    item = random_matrix.row(user).index[0]
    training = random_matrix.without([(user, item)])
    decay = Decay("exponential", 0.2)

    u_stats = training.summary(user)
    num = num_scaled = den = 0.0
    for other, value in training.column(item).items():
        if other == user:
            continue
        st = training.summary(other)
        if not st.has_variance:
            continue
        w = similarity(training.row(user), training.row(other), decay=decay)
        num += w * (value - st.mean)
        num_scaled += w * (value - st.mean) / st.sd
        den += abs(w)
    assert den > 0.0

    plain = predict_rating(user, item, training, decay=decay)
    scaled = predict_rating(user, item, training, decay=decay, use_sd_scaling=True)
    assert plain == pytest.approx(u_stats.mean + num / den)
    assert scaled == pytest.approx(u_stats.mean + u_stats.sd * num_scaled / den)


def test_precomputed_matrix_matches_on_the_fly(random_matrix: RatingMatrix) -> None:
    targets = get_targets(random_matrix, "random", rng=5)
    decay = Decay("inverse-power", 0.8)
    sim = build_similarity_matrix(targets.reduced, decay=decay)
    sim_before = sim.copy()
    frame_before = targets.reduced.to_frame()

    on_the_fly = predict(targets.users, targets.reduced, targets.items, mode="inverse-power", alpha=0.8)
    looked_up = predict(targets.users, targets.reduced, targets.items, similarity_matrix=sim)

    assert on_the_fly.errors.keys() == looked_up.errors.keys()
    for a, b in zip(on_the_fly.predictions, looked_up.predictions):
        if a is None:
            assert b is None
        else:
            assert a == pytest.approx(b)

    # Neither input is mutated.
    assert sim.equals(sim_before)
    assert targets.reduced.to_frame().equals(frame_before)


def test_neighbour_subsetting_is_reproducible_with_seed(random_matrix: RatingMatrix) -> None:
    targets = get_targets(random_matrix, "random", rng=9)
    kwargs = dict(mode="linear", alpha=1.0, neighbor_subset_size=3, seed=123)

    first = predict(targets.users, targets.reduced, targets.items, **kwargs)
    second = predict(targets.users, targets.reduced, targets.items, **kwargs)
    threaded = predict(targets.users, targets.reduced, targets.items, n_jobs=4, **kwargs)

    assert first.predictions == second.predictions
    assert first.predictions == threaded.predictions


def test_subset_larger_than_pool_fails_loudly(three_user_matrix: RatingMatrix) -> None:
    with pytest.raises(InsufficientDataError, match="exceeds"):
        predict_rating(
            "userB", "item3", three_user_matrix, neighbor_subset_size=5, rng=np.random.default_rng(0)
        )


def test_no_candidates_and_unknown_keys(three_user_matrix: RatingMatrix) -> None:
    # Only userB rated item3 once userC's rating is masked, so userB has no candidates.
    reduced = three_user_matrix.without([("userC", "item3")])
    with pytest.raises(InsufficientDataError):
        predict_rating("userB", "item3", reduced)
    with pytest.raises(UnknownKeyError):
        predict_rating("userZ", "item1", three_user_matrix)
    with pytest.raises(UnknownKeyError):
        predict_rating("userA", "item9", three_user_matrix)

    sim = build_similarity_matrix(three_user_matrix, users=["userA", "userB"])
    with pytest.raises(KeyError):
        predict_rating("userA", "item3", three_user_matrix, similarity_matrix=sim)


def test_batch_isolates_per_user_failures(random_matrix: RatingMatrix) -> None:
    users = random_matrix.users[:3]
    items = [random_matrix.row(u).index[0] for u in users]
    batch = predict(users + ["ghost"], random_matrix, items + [items[0]])

    assert len(batch) == 4
    assert batch.predictions[3] is None
    assert isinstance(batch.errors[3], UnknownKeyError)
    assert batch.n_failed >= 1

    frame = batch.to_frame()
    assert frame["error"].iloc[3].startswith("UnknownKeyError")
    with pytest.raises(CollaborativeFilteringError):
        batch.raise_first()


def test_parallel_lists_must_match(three_user_matrix: RatingMatrix) -> None:
    with pytest.raises(ValueError):
        predict(["userA", "userB"], three_user_matrix, ["item1"])


def test_prediction_config_from_mapping() -> None:
    cfg = PredictionConfig.from_mapping(
        {"mode": "exponential", "alpha": 0.25, "use_sd_scaling": True, "neighbor_subset_size": None}
    )
    assert cfg.decay == Decay("exponential", 0.25)
    assert cfg.use_sd_scaling
    assert cfg.neighbor_subset_size is None
    assert cfg.as_kwargs()["mode"].value == "exponential"
