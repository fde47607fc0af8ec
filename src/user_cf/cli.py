"""Predict one user's rating for one boardgame from the command line."""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import numpy as np
import pandas as pd

from ..data import game_stats, load_raw_data
from ..paths import ProjectPaths, get_repo_root, resolve_under
from ..utils import config_section, load_yaml_config, setup_logging
from .errors import CollaborativeFilteringError, NoNeighborsError
from .matrix import RatingMatrix
from .predict import PredictionConfig, neighbor_contributions, predict_rating
from .similarity import Decay, DecayMode, load_similarity_matrix


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="User-user CF rating prediction for boardgames")
    p.add_argument("--user-id", type=int, required=True, help="boardgamegeek user id (userID column)")
    p.add_argument("--game-id", type=int, required=True, help="boardgamegeek game id (gameID column)")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--similarity-matrix", type=Path, default=None, help="Precomputed similarity CSV to look weights up in")
    p.add_argument("--mode", type=str, default=None, choices=[m.value for m in DecayMode], help="Decay mode")
    p.add_argument("--alpha", type=float, default=None, help="Decay smoothing parameter")
    p.add_argument("--sd-scaling", action="store_true", help="Scale deviations by the users' standard deviations")
    p.add_argument("--neighbors", type=int, default=None, help="Sample this many neighbours (without replacement)")
    p.add_argument("--seed", type=int, default=None, help="Seed for neighbour sampling")
    p.add_argument("--top", type=int, default=10, help="How many neighbour contributions to show")
    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    args = build_arg_parser().parse_args(argv)

    repo_root = get_repo_root()
    config = load_yaml_config(resolve_under(repo_root, args.config))
    dataset_cfg = config_section(config, "dataset")
    pred_raw = {**config_section(config, "similarity"), **config_section(config, "prediction")}
    cfg = PredictionConfig.from_mapping(pred_raw)

    decay = Decay(
        mode=args.mode or cfg.decay.mode,
        alpha=cfg.decay.alpha if args.alpha is None else float(args.alpha),
    )
    use_sd_scaling = bool(args.sd_scaling or cfg.use_sd_scaling)
    subset = args.neighbors if args.neighbors is not None else cfg.neighbor_subset_size

    paths = ProjectPaths.from_repo_root(repo_root, raw_dir=str(dataset_cfg.get("raw_dir", "data/raw")))
    data = load_raw_data(
        paths.raw_dir,
        ratings_file=str(dataset_cfg.get("ratings_file", "elite")),
        titles_file=dataset_cfg.get("titles_file", "boardgame-titles.csv"),
    )
    matrix = RatingMatrix.from_long(data.ratings)

    sim = None
    if args.similarity_matrix is not None:
        sim = load_similarity_matrix(resolve_under(repo_root, args.similarity_matrix))

    user, game = int(args.user_id), int(args.game_id)

    stats = game_stats(data.ratings, data.titles)
    game_row = stats[stats["gameID"] == game]
    print("\n=== Game ===")
    if game_row.empty:
        print(f"gameID={game} has no ratings in this population.")
    else:
        print(game_row.to_string(index=False))

    existing = matrix.rating(user, game) if (user in matrix and matrix.has_item(game)) else None
    training = matrix
    if existing is not None:
        # Hide the known rating so it cannot feed its own prediction.
        training = matrix.without([(user, game)])
        print(f"\nNote: user {user} already rated this game ({existing:g}); predicting with it held out.")

    # Both draws share one seed sequence, so the table lists the neighbours the prediction sampled.
    seed_seq = np.random.SeedSequence(args.seed)

    print("\n=== Prediction ===")
    print(f"decay={decay} sd_scaling={use_sd_scaling} neighbours={'all' if subset is None else subset}")
    actual = "" if existing is None else f" actual_rating={existing:.4f}"
    try:
        value = predict_rating(
            user,
            game,
            training,
            similarity_matrix=sim,
            use_sd_scaling=use_sd_scaling,
            decay=decay,
            neighbor_subset_size=subset,
            rng=np.random.default_rng(seed_seq),
        )
        print(f"userID={user} gameID={game} predicted_rating={value:.4f}{actual}")
    except NoNeighborsError as exc:
        mean = training.summary(user).mean
        print(f"{exc}\nFalling back to the user's mean rating: {mean:.4f}{actual}")
        return
    except CollaborativeFilteringError as exc:
        print(f"Cannot predict: {exc}")
        return

    contrib = neighbor_contributions(
        user,
        game,
        training,
        similarity_matrix=sim,
        use_sd_scaling=use_sd_scaling,
        decay=decay,
        neighbor_subset_size=subset,
        rng=np.random.default_rng(seed_seq),
    )
    print("\n=== Strongest neighbours ===")
    with pd.option_context("display.float_format", "{:.4f}".format):
        print(contrib.head(int(args.top)).to_string(index=False))


if __name__ == "__main__":
    main()
