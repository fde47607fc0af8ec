"""Error taxonomy for the collaborative-filtering core.

Undefined Pearson correlations are not errors: they score 0 (see
`similarity.pearson_common`). Everything below is raised per user/item and
is isolated by the batch entry points.
"""

from __future__ import annotations

from typing import Any


class CollaborativeFilteringError(Exception):
    """Base class for all CF failures."""


class InsufficientDataError(CollaborativeFilteringError):
    """A row has nothing to hold out, or an item has no usable neighbour pool."""


class NoNeighborsError(CollaborativeFilteringError):
    """Sum of absolute neighbour similarities is zero; the weighted mean is undefined."""

    def __init__(self, user: Any, item: Any, n_candidates: int = 0) -> None:
        self.user = user
        self.item = item
        self.n_candidates = int(n_candidates)
        super().__init__(
            f"No neighbour with non-zero similarity for user={user!r} item={item!r} "
            f"(candidates={self.n_candidates})"
        )


class UnknownKeyError(CollaborativeFilteringError, KeyError):
    """A user, item, holdout cell or similarity entry does not exist."""

    def __str__(self) -> str:
        # KeyError.__str__ repr()s the message; keep it readable.
        return str(self.args[0]) if self.args else ""
