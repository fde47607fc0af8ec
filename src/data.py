from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd


@dataclass(frozen=True)
class RawBoardgameData:
    ratings: pd.DataFrame
    titles: Optional[pd.DataFrame] = None


# The boardgamegeek dumps carry their attribution line as the user-id header.
SOURCE_COLUMN_RENAMES: Dict[str, str] = {
    "Compiled from boardgamegeek.com by Matt Borthwick": "userID",
    "boardgamegeek.com game ID": "gameID",
}

USER_POPULATIONS: Dict[str, str] = {
    "elite": "boardgame-elite-users.csv",
    "frequent": "boardgame-frequent-users.csv",
    "all": "boardgame-users.csv",
}

TITLES_FILE = "boardgame-titles.csv"

REQUIRED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "ratings": ("userID", "gameID", "rating"),
    "titles": ("gameID", "title"),
}


def _read_csv(path: Path) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"Missing raw dataset file: {path}")
    df = pd.read_csv(path)
    return df.rename(columns=SOURCE_COLUMN_RENAMES)


def load_raw_data(
    raw_dir: Path,
    *,
    ratings_file: str = USER_POPULATIONS["elite"],
    titles_file: Optional[str] = TITLES_FILE,
) -> RawBoardgameData:
    """Load one boardgamegeek ratings population (and optionally the titles).

    Notes
    -----
    `ratings_file` may be a population key from `USER_POPULATIONS`
    ("elite", "frequent", "all") or a file name under `raw_dir`.
    """
    raw_dir = Path(raw_dir)
    ratings_name = USER_POPULATIONS.get(ratings_file, ratings_file)
    ratings = _read_csv(raw_dir / ratings_name)
    if "rating" in ratings.columns and pd.api.types.is_numeric_dtype(ratings["rating"]):
        ratings["rating"] = ratings["rating"].astype("float64")

    titles = None
    if titles_file:
        titles_path = raw_dir / titles_file
        if titles_path.exists():
            titles = _read_csv(titles_path)

    data = RawBoardgameData(ratings=ratings, titles=titles)
    validate_schema(data)
    return data


def validate_schema(data: RawBoardgameData) -> None:
    """Validate that required columns exist and basic constraints hold."""
    frames = {"ratings": data.ratings, "titles": data.titles}
    for name, cols in REQUIRED_COLUMNS.items():
        df = frames[name]
        if df is None:
            continue
        missing = [c for c in cols if c not in df.columns]
        if missing:
            raise ValueError(f"{name} table missing columns: {missing}")

    ratings = data.ratings
    if ratings[["userID", "gameID"]].isna().any().any():
        raise ValueError("ratings contain rows with a missing userID or gameID")

    if not pd.api.types.is_numeric_dtype(ratings["rating"]):
        raise ValueError(f"ratings.rating must be numeric, got dtype {ratings['rating'].dtype}")
    if ratings["rating"].isna().any():
        raise ValueError("ratings contain missing rating values")

    # One rating per (userID, gameID); the wide matrix has a single cell per pair.
    if ratings.duplicated(subset=["userID", "gameID"]).any():
        raise ValueError("ratings contain duplicate (userID, gameID) rows")

    if data.titles is not None and data.titles["gameID"].duplicated().any():
        raise ValueError("titles contain duplicate gameID values")


def game_stats(ratings: pd.DataFrame, titles: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """Per-game average rating and rating count, joined with titles when given."""
    stats = (
        ratings.groupby("gameID", as_index=False)
        .agg(avg_rating=("rating", "mean"), freq=("rating", "size"))
        .sort_values("gameID", kind="mergesort")
        .reset_index(drop=True)
    )
    if titles is not None:
        stats = stats.merge(titles[["gameID", "title"]], on="gameID", how="left")
    return stats
