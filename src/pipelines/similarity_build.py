from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..data import USER_POPULATIONS, load_raw_data
from ..paths import ProjectPaths, get_repo_root, resolve_under
from ..user_cf.matrix import RatingMatrix
from ..user_cf.similarity import Decay, DecayMode, build_similarity_matrix, save_similarity_matrix
from ..utils import config_section, load_yaml_config, setup_logging


logger = logging.getLogger(__name__)

SIMILARITY_FILE = "similarity_matrix.csv"
META_FILE = "similarity_meta.json"


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _ensure_can_write(out_dir: Path, *, force: bool) -> None:
    outputs = [out_dir / SIMILARITY_FILE, out_dir / META_FILE]
    existing = [p for p in outputs if p.exists()]
    if existing and not force:
        raise FileExistsError(
            "Similarity artifacts already exist. Re-run with --force to overwrite.\n"
            + "\n".join([str(p) for p in existing])
        )
    if force:
        for p in existing:
            p.unlink(missing_ok=True)


def stale_reason(table_path: Path, ratings_path: Path) -> str | None:
    """Why the table at `table_path` may not match `ratings_path`, or None if its meta agrees."""
    meta_path = table_path.parent / META_FILE
    if not meta_path.is_file():
        return f"no {META_FILE} next to {table_path.name}"
    meta = json.loads(meta_path.read_text())
    recorded = meta.get("ratings_sha256")
    if recorded != _sha256_file(ratings_path):
        return f"built from a different {meta.get('ratings_file', 'ratings file')} (sha256 {recorded})"
    return None


def run_similarity_build(
    *,
    config_path: Path,
    out_dir: Path | None = None,
    force: bool = False,
    mode: str | None = None,
    alpha: float | None = None,
    n_jobs: int | None = None,
) -> dict[str, Any]:
    """Precompute the user x user similarity table for one ratings population.

    Writes `similarity_matrix.csv` and `similarity_meta.json`; the meta file
    records the ratings file's sha256 so a stale table can be detected.
    """
    repo_root = get_repo_root()
    config = load_yaml_config(config_path)
    dataset_cfg = config_section(config, "dataset")
    sim_cfg = config_section(config, "similarity")

    paths = ProjectPaths.from_repo_root(
        repo_root,
        raw_dir=Path(str(dataset_cfg.get("raw_dir", "data/raw"))),
        artifacts_dir=Path(str(dataset_cfg.get("artifacts_dir", "artifacts"))),
    )
    out_dir = resolve_under(repo_root, out_dir) if out_dir is not None else paths.similarity_dir
    _ensure_can_write(out_dir, force=force)
    out_dir.mkdir(parents=True, exist_ok=True)

    decay = Decay(
        mode=DecayMode.parse(mode or sim_cfg.get("mode", DecayMode.UNWEIGHTED)),
        alpha=float(alpha if alpha is not None else sim_cfg.get("alpha", 1.0)),
    )
    jobs = int(n_jobs if n_jobs is not None else sim_cfg.get("n_jobs", 1))

    ratings_file = str(dataset_cfg.get("ratings_file", "elite"))
    logger.info("Loading ratings %s from %s", ratings_file, paths.raw_dir)
    data = load_raw_data(paths.raw_dir, ratings_file=ratings_file, titles_file=None)
    matrix = RatingMatrix.from_long(data.ratings)
    logger.info("Rating matrix: %s", matrix.describe())

    sim = build_similarity_matrix(matrix, decay=decay, n_jobs=jobs)
    sim_path = save_similarity_matrix(sim, out_dir / SIMILARITY_FILE)

    ratings_path = paths.raw_dir / USER_POPULATIONS.get(ratings_file, ratings_file)
    meta = {
        "built_at_utc": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "ratings_file": ratings_path.name,
        "ratings_sha256": _sha256_file(ratings_path),
        "matrix": matrix.describe(),
        "decay": {"mode": decay.mode.value, "alpha": decay.alpha},
        "n_jobs": jobs,
        "outputs": {"similarity_matrix": sim_path.name},
    }
    meta_path = out_dir / META_FILE
    meta_path.write_text(json.dumps(meta, indent=2, sort_keys=True) + "\n")

    logger.info("Similarity build complete: %s", sim_path)
    return meta


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Precompute the user-user similarity matrix (O(n^2) in users).")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--out-dir", type=Path, default=None, help="Output directory for artifacts")
    p.add_argument("--force", action="store_true", help="Overwrite existing artifacts.")
    p.add_argument("--mode", type=str, default=None, choices=[m.value for m in DecayMode], help="Override decay mode")
    p.add_argument("--alpha", type=float, default=None, help="Override decay alpha")
    p.add_argument("--n-jobs", type=int, default=None, help="Worker threads for pair evaluation")
    return p


def main(argv: list[str] | None = None) -> None:
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))
    args = build_arg_parser().parse_args(argv)
    repo_root = get_repo_root()

    run_similarity_build(
        config_path=resolve_under(repo_root, args.config),
        out_dir=args.out_dir,
        force=bool(args.force),
        mode=args.mode,
        alpha=args.alpha,
        n_jobs=args.n_jobs,
    )


if __name__ == "__main__":
    main()
