from __future__ import annotations

import json
import logging

import pandas as pd
import pytest

from src.data import RawBoardgameData, game_stats, load_raw_data, validate_schema
from src.pipelines.evaluate_cf import run_evaluation
from src.pipelines.similarity_build import run_similarity_build, stale_reason
from src.user_cf.matrix import RatingMatrix
from src.user_cf.similarity import load_similarity_matrix


def test_load_raw_data_renames_source_headers(tmp_path, random_ratings: pd.DataFrame, write_raw) -> None:
    write_raw(tmp_path / "raw", random_ratings)
    data = load_raw_data(tmp_path / "raw", ratings_file="elite")

    assert list(data.ratings.columns) == ["userID", "gameID", "rating"]
    assert data.ratings["rating"].dtype == "float64"
    assert data.titles is not None
    assert list(data.titles.columns) == ["gameID", "title"]

    matrix = RatingMatrix.from_long(data.ratings)
    assert matrix.n_observed() == len(random_ratings)


def test_missing_file_and_bad_schema(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_raw_data(tmp_path, ratings_file="frequent")

    dupes = pd.DataFrame({"userID": [1, 1], "gameID": [5, 5], "rating": [7.0, 8.0]})
    with pytest.raises(ValueError, match="duplicate"):
        validate_schema(RawBoardgameData(ratings=dupes))

    no_rating = pd.DataFrame({"userID": [1], "gameID": [5]})
    with pytest.raises(ValueError, match="missing columns"):
        validate_schema(RawBoardgameData(ratings=no_rating))


def test_game_stats_average_and_frequency() -> None:
    ratings = pd.DataFrame({"userID": [1, 2, 3], "gameID": [9, 9, 4], "rating": [6.0, 8.0, 5.0]})
    titles = pd.DataFrame({"gameID": [4, 9], "title": ["Four", "Nine"]})
    stats = game_stats(ratings, titles)

    assert stats.to_dict("records") == [
        {"gameID": 4, "avg_rating": 5.0, "freq": 1, "title": "Four"},
        {"gameID": 9, "avg_rating": 7.0, "freq": 2, "title": "Nine"},
    ]


def test_similarity_build_pipeline_writes_table_and_meta(
    tmp_path, random_ratings: pd.DataFrame, write_raw, write_config
) -> None:
    raw_dir = tmp_path / "raw"
    write_raw(raw_dir, random_ratings)
    config_path = write_config(raw_dir, "similarity:", "  mode: exponential", "  alpha: 0.5")
    out_dir = tmp_path / "artifacts" / "similarity"

    meta = run_similarity_build(config_path=config_path, out_dir=out_dir, n_jobs=2)

    assert meta["decay"] == {"mode": "exponential", "alpha": 0.5}
    assert meta["matrix"]["n_users"] == random_ratings["userID"].nunique()
    assert json.loads((out_dir / "similarity_meta.json").read_text())["ratings_sha256"] == meta["ratings_sha256"]

    sim = load_similarity_matrix(out_dir / "similarity_matrix.csv")
    assert sim.shape == (meta["matrix"]["n_users"], meta["matrix"]["n_users"])

    with pytest.raises(FileExistsError):
        run_similarity_build(config_path=config_path, out_dir=out_dir)
    run_similarity_build(config_path=config_path, out_dir=out_dir, force=True, mode="unweighted")


def test_evaluation_warns_about_precomputed_and_stale_tables(
    tmp_path, random_ratings: pd.DataFrame, write_raw, write_config, caplog
) -> None:
    raw_dir = tmp_path / "raw"
    write_raw(raw_dir, random_ratings)
    config_path = write_config(
        raw_dir,
        "prediction:",
        "  fallback_to_mean: true",
        "evaluation:",
        "  rounds: 1",
        "  n_test_users: 5",
        "  seed: 3",
    )
    out_dir = tmp_path / "similarity"
    run_similarity_build(config_path=config_path, out_dir=out_dir)
    table = out_dir / "similarity_matrix.csv"
    ratings_path = raw_dir / "boardgame-elite-users.csv"
    assert stale_reason(table, ratings_path) is None

    with caplog.at_level(logging.WARNING, logger="src.pipelines.evaluate_cf"):
        report = run_evaluation(config_path=config_path, similarity_matrix_path=table)
    assert len(report.rounds) == 1
    warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
    assert any("held-out ratings" in m for m in warnings)
    assert not any("may be stale" in m for m in warnings)

    # Ratings change after the build: the recorded sha256 no longer matches.
    changed = random_ratings.copy()
    changed.loc[0, "rating"] = 11.0 - changed.loc[0, "rating"]
    write_raw(raw_dir, changed)
    assert stale_reason(table, ratings_path) is not None

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="src.pipelines.evaluate_cf"):
        run_evaluation(config_path=config_path, similarity_matrix_path=table)
    assert any("may be stale" in r.getMessage() for r in caplog.records)

    (out_dir / "similarity_meta.json").unlink()
    assert "similarity_meta.json" in stale_reason(table, ratings_path)
