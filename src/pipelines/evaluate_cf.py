from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from ..data import USER_POPULATIONS, load_raw_data
from ..paths import ProjectPaths, get_repo_root, resolve_under
from ..user_cf.evaluate import EvaluationConfig, EvaluationReport, cross_validate
from ..user_cf.matrix import RatingMatrix
from ..user_cf.predict import PredictionConfig
from ..user_cf.similarity import load_similarity_matrix
from ..utils import ReproducibilityConfig, config_section, load_yaml_config, set_global_seed, setup_logging
from .similarity_build import stale_reason


logger = logging.getLogger(__name__)


def run_evaluation(
    *,
    config_path: Path,
    rounds: int | None = None,
    n_test_users: int | None = None,
    seed: int | None = None,
    similarity_matrix_path: Path | None = None,
    out_path: Path | None = None,
) -> EvaluationReport:
    """Monte-Carlo cross-validation of the predictor configured in config.yaml."""
    repo_root = get_repo_root()
    config = load_yaml_config(config_path)
    dataset_cfg = config_section(config, "dataset")
    eval_raw = dict(config_section(config, "evaluation"))
    if rounds is not None:
        eval_raw["rounds"] = rounds
    if n_test_users is not None:
        eval_raw["n_test_users"] = n_test_users
    if seed is not None:
        eval_raw["seed"] = seed

    prediction = PredictionConfig.from_mapping(
        {**config_section(config, "similarity"), **config_section(config, "prediction")}
    )
    cfg = EvaluationConfig.from_mapping(eval_raw, prediction=prediction)
    if cfg.seed is not None:
        set_global_seed(ReproducibilityConfig(seed=cfg.seed))

    paths = ProjectPaths.from_repo_root(repo_root, raw_dir=Path(str(dataset_cfg.get("raw_dir", "data/raw"))))
    ratings_file = str(dataset_cfg.get("ratings_file", "elite"))
    data = load_raw_data(paths.raw_dir, ratings_file=ratings_file, titles_file=None)
    matrix = RatingMatrix.from_long(data.ratings)
    logger.info("Rating matrix: %s", matrix.describe())

    sim = None
    if similarity_matrix_path is not None:
        table_path = resolve_under(repo_root, similarity_matrix_path)
        sim = load_similarity_matrix(table_path)
        logger.info("Using precomputed similarity matrix users=%d", len(sim))
        logger.warning(
            "Precomputed similarities include the held-out ratings of every round; RMSE will be optimistic."
        )
        ratings_path = paths.raw_dir / USER_POPULATIONS.get(ratings_file, ratings_file)
        reason = stale_reason(table_path, ratings_path)
        if reason is not None:
            logger.warning("Similarity matrix %s may be stale: %s", table_path, reason)

    report = cross_validate(matrix, cfg, similarity_matrix=sim)

    if out_path is not None:
        out_path = resolve_under(repo_root, out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "config": {
                "rounds": cfg.rounds,
                "n_test_users": cfg.n_test_users,
                "seed": cfg.seed,
                "exclude_failed_rounds": cfg.exclude_failed_rounds,
                "decay": {"mode": prediction.decay.mode.value, "alpha": prediction.decay.alpha},
                "use_sd_scaling": prediction.use_sd_scaling,
                "neighbor_subset_size": prediction.neighbor_subset_size,
                "fallback_to_mean": prediction.fallback_to_mean,
                "similarity_matrix": None if similarity_matrix_path is None else str(similarity_matrix_path),
            },
            "report": report.to_dict(),
        }
        out_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        logger.info("Wrote evaluation report to %s", out_path)

    return report


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Cross-validate the user-user CF predictor with RMSE.")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--rounds", type=int, default=None, help="Override number of rounds")
    p.add_argument("--n-test-users", type=int, default=None, help="Override test users per round")
    p.add_argument("--seed", type=int, default=None, help="Override random seed")
    p.add_argument("--similarity-matrix", type=Path, default=None, help="Precomputed similarity CSV")
    p.add_argument("--out", type=Path, default=None, help="Write the report JSON here")
    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    args = build_arg_parser().parse_args(argv)
    repo_root = get_repo_root()

    report = run_evaluation(
        config_path=resolve_under(repo_root, args.config),
        rounds=args.rounds,
        n_test_users=args.n_test_users,
        seed=args.seed,
        similarity_matrix_path=args.similarity_matrix,
        out_path=args.out,
    )

    print("\n=== Rounds ===")
    print(report.to_frame().to_string(index=False))
    print(f"\nMean RMSE ({len(report.rmses)}/{len(report.rounds)} rounds): {report.mean_rmse:.4f}")


if __name__ == "__main__":
    main()
