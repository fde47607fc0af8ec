from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Ensure `import src...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.user_cf.matrix import RatingMatrix  # noqa: E402


@pytest.fixture()
def three_user_matrix() -> RatingMatrix:
    """userA/B/C x item1..4 with the gaps from the worked example."""
    return RatingMatrix.from_dict(
        {
            "userA": {"item1": 5.0, "item2": 3.0, "item4": 4.0},
            "userB": {"item1": 4.0, "item2": 3.0, "item3": 5.0},
            "userC": {"item2": 2.0, "item3": 4.0, "item4": 5.0},
        }
    )


@pytest.fixture()
def random_ratings() -> pd.DataFrame:
    """Long-format ratings: 30 users x 12 games, ~60% dense, integer ratings 1..10."""
    rng = np.random.default_rng(7)
    rows = []
    for user in range(1, 31):
        for game in range(100, 112):
            if rng.random() < 0.6:
                rows.append({"userID": user, "gameID": game, "rating": float(rng.integers(1, 11))})
    return pd.DataFrame(rows)


@pytest.fixture()
def random_matrix(random_ratings: pd.DataFrame) -> RatingMatrix:
    return RatingMatrix.from_long(random_ratings)


USER_HEADER = "Compiled from boardgamegeek.com by Matt Borthwick"


def _write_raw(raw_dir: Path, ratings: pd.DataFrame) -> None:
    raw_dir.mkdir(parents=True, exist_ok=True)
    ratings.rename(columns={"userID": USER_HEADER}).to_csv(raw_dir / "boardgame-elite-users.csv", index=False)
    titles = pd.DataFrame({"boardgamegeek.com game ID": sorted(ratings["gameID"].unique())})
    titles["title"] = [f"Game {g}" for g in titles["boardgamegeek.com game ID"]]
    titles.to_csv(raw_dir / "boardgame-titles.csv", index=False)


@pytest.fixture()
def write_raw():
    """Write ratings (userID, gameID, rating) as the boardgamegeek CSVs under a raw dir."""
    return _write_raw


@pytest.fixture()
def write_config(tmp_path: Path):
    """Write a config.yaml pointing at `raw_dir`; extra lines are appended verbatim."""

    def _write(raw_dir: Path, *extra: str) -> Path:
        path = tmp_path / "config.yaml"
        lines = ["dataset:", f"  raw_dir: {raw_dir.as_posix()}", "  ratings_file: elite", *extra, ""]
        path.write_text("\n".join(lines))
        return path

    return _write
