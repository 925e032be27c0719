"""
Rating Store
============
Immutable in-memory table of (user, item, rating) triplets.

Every estimator and the evaluation harness consume ratings through this
class. Identifiers are kept as given and mapped to contiguous indices
(sorted by identifier) for the array-based models.
"""

from collections import namedtuple
from functools import cached_property
from typing import Iterable, Iterator, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.sparse import csr_matrix

from .config import config
from .exceptions import DataError


Rating = namedtuple('Rating', ['user_id', 'item_id', 'value', 'timestamp'], defaults=(None,))

USER_COL = 'userId'
ITEM_COL = 'movieId'
RATING_COL = 'rating'
TIMESTAMP_COL = 'timestamp'


def _readonly(values, dtype=None) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


def _sorted_index(ids: np.ndarray) -> pd.Index:
    return pd.Index(pd.unique(ids)).sort_values()


def _rows_to_frame(rows: Iterable) -> pd.DataFrame:
    """Convert an iterable of 3- or 4-tuples to a ratings DataFrame"""
    records = []
    has_timestamp = False

    for pos, row in enumerate(rows):
        try:
            fields = tuple(row)
        except TypeError:
            raise DataError(f"Row {pos}: expected a (user, item, rating[, timestamp]) tuple, got {row!r}")

        if len(fields) == 3:
            records.append(fields + (None,))
        elif len(fields) == 4:
            records.append(fields)
            has_timestamp = True
        else:
            raise DataError(f"Row {pos}: expected 3 or 4 fields, got {len(fields)}")

    frame = pd.DataFrame(records, columns=[USER_COL, ITEM_COL, RATING_COL, TIMESTAMP_COL])
    if not has_timestamp:
        frame = frame.drop(columns=TIMESTAMP_COL)
    return frame


class RatingStore:
    """
    Read-only snapshot of explicit ratings

    Use ``RatingStore.load`` to build a validated store; the constructor
    trusts its inputs and is used internally (e.g. for fold subsets).
    """

    def __init__(
        self,
        users,
        items,
        values,
        timestamps=None,
        min_rating: float = config.MIN_RATING,
        max_rating: float = config.MAX_RATING
    ):
        self._users = _readonly(users)
        self._items = _readonly(items)
        self._values = _readonly(values, dtype=float)
        self._timestamps = None if timestamps is None else _readonly(timestamps)
        self.min_rating = float(min_rating)
        self.max_rating = float(max_rating)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        ratings: Union[pd.DataFrame, Iterable],
        min_rating: float = config.MIN_RATING,
        max_rating: float = config.MAX_RATING
    ) -> 'RatingStore':
        """
        Validate ratings and build a store

        Args:
            ratings: DataFrame with columns (userId, movieId, rating[, timestamp])
                or an iterable of (user, item, rating[, timestamp]) tuples
            min_rating: Lowest allowed rating value
            max_rating: Highest allowed rating value

        Returns:
            RatingStore holding the validated ratings

        Raises:
            DataError: On the first malformed or out-of-range row
        """
        if not min_rating < max_rating:
            raise DataError(f"Invalid rating bound: [{min_rating}, {max_rating}]")

        if isinstance(ratings, pd.DataFrame):
            missing = [c for c in (USER_COL, ITEM_COL, RATING_COL) if c not in ratings.columns]
            if missing:
                raise DataError(f"Missing columns: {missing}")
            columns = [USER_COL, ITEM_COL, RATING_COL]
            if TIMESTAMP_COL in ratings.columns:
                columns.append(TIMESTAMP_COL)
            frame = ratings[columns].reset_index(drop=True)
        else:
            frame = _rows_to_frame(ratings)

        if frame.empty:
            raise DataError("No ratings to load")

        missing_ids = frame[[USER_COL, ITEM_COL]].isna().any(axis=1)
        if missing_ids.any():
            pos = int(np.flatnonzero(missing_ids.to_numpy())[0])
            raise DataError(f"Row {pos}: missing user or item identifier")

        values = pd.to_numeric(frame[RATING_COL], errors='coerce')
        if values.isna().any():
            pos = int(np.flatnonzero(values.isna().to_numpy())[0])
            raise DataError(f"Row {pos}: rating {frame[RATING_COL].iloc[pos]!r} is not a number")

        out_of_range = (values < min_rating) | (values > max_rating)
        if out_of_range.any():
            pos = int(np.flatnonzero(out_of_range.to_numpy())[0])
            raise DataError(
                f"Row {pos}: rating {values.iloc[pos]} outside [{min_rating}, {max_rating}]"
            )

        duplicated = frame.duplicated(subset=[USER_COL, ITEM_COL])
        if duplicated.any():
            pos = int(np.flatnonzero(duplicated.to_numpy())[0])
            raise DataError(
                f"Row {pos}: duplicate rating for user {frame[USER_COL].iloc[pos]!r}, "
                f"item {frame[ITEM_COL].iloc[pos]!r}"
            )

        timestamps = frame[TIMESTAMP_COL].to_numpy() if TIMESTAMP_COL in frame.columns else None

        return cls(
            frame[USER_COL].to_numpy(),
            frame[ITEM_COL].to_numpy(),
            values.to_numpy(dtype=float),
            timestamps,
            min_rating=min_rating,
            max_rating=max_rating
        )

    def subset(self, indices) -> 'RatingStore':
        """Return a new store holding the ratings at the given positions"""
        indices = np.asarray(indices, dtype=int)
        return RatingStore(
            self._users[indices],
            self._items[indices],
            self._values[indices],
            None if self._timestamps is None else self._timestamps[indices],
            min_rating=self.min_rating,
            max_rating=self.max_rating
        )

    # ------------------------------------------------------------------
    # Raw columns
    # ------------------------------------------------------------------

    @property
    def users(self) -> np.ndarray:
        return self._users

    @property
    def items(self) -> np.ndarray:
        return self._items

    @property
    def values(self) -> np.ndarray:
        return self._values

    @property
    def timestamps(self) -> Optional[np.ndarray]:
        return self._timestamps

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Rating]:
        timestamps = self._timestamps if self._timestamps is not None else [None] * len(self)
        for user, item, value, ts in zip(self._users, self._items, self._values, timestamps):
            yield Rating(user, item, float(value), ts)

    def __repr__(self) -> str:
        return (f"RatingStore(ratings={len(self):,}, users={self.n_users:,}, "
                f"items={self.n_items:,}, scale=[{self.min_rating}, {self.max_rating}])")

    # ------------------------------------------------------------------
    # Global statistics
    # ------------------------------------------------------------------

    @property
    def count(self) -> int:
        return len(self)

    @cached_property
    def mean(self) -> float:
        return float(self._values.mean())

    @property
    def n_users(self) -> int:
        return len(self.user_index)

    @property
    def n_items(self) -> int:
        return len(self.item_index)

    @property
    def sparsity(self) -> float:
        """Fraction of the user x item matrix without a rating"""
        return 1.0 - len(self) / (self.n_users * self.n_items)

    # ------------------------------------------------------------------
    # Contiguous indices
    # ------------------------------------------------------------------

    @cached_property
    def user_index(self) -> pd.Index:
        return _sorted_index(self._users)

    @cached_property
    def item_index(self) -> pd.Index:
        return _sorted_index(self._items)

    @cached_property
    def user_codes(self) -> np.ndarray:
        return _readonly(self.user_index.get_indexer(self._users))

    @cached_property
    def item_codes(self) -> np.ndarray:
        return _readonly(self.item_index.get_indexer(self._items))

    def to_csr(self) -> csr_matrix:
        """User x item sparse matrix in contiguous-index coordinates"""
        return csr_matrix(
            (self._values, (self.user_codes, self.item_codes)),
            shape=(self.n_users, self.n_items)
        )

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({
            USER_COL: self._users,
            ITEM_COL: self._items,
            RATING_COL: self._values
        })
        if self._timestamps is not None:
            frame[TIMESTAMP_COL] = self._timestamps
        return frame

    # ------------------------------------------------------------------
    # Grouping
    # ------------------------------------------------------------------

    @cached_property
    def _user_groups(self) -> Tuple[np.ndarray, np.ndarray]:
        order = np.lexsort((self.item_codes, self.user_codes))
        bounds = np.searchsorted(self.user_codes[order], np.arange(self.n_users + 1))
        return _readonly(order), bounds

    @cached_property
    def _item_groups(self) -> Tuple[np.ndarray, np.ndarray]:
        order = np.lexsort((self.user_codes, self.item_codes))
        bounds = np.searchsorted(self.item_codes[order], np.arange(self.n_items + 1))
        return _readonly(order), bounds

    def canonical_order(self) -> np.ndarray:
        """Rating positions sorted by (user, item), independent of load order"""
        return self._user_groups[0]

    def positions_for_user_code(self, code: int) -> np.ndarray:
        order, bounds = self._user_groups
        return order[bounds[code]:bounds[code + 1]]

    def positions_for_item_code(self, code: int) -> np.ndarray:
        order, bounds = self._item_groups
        return order[bounds[code]:bounds[code + 1]]

    def ratings_for_user(self, user_id) -> Tuple[np.ndarray, np.ndarray]:
        """(item ids, ratings) of one user; empty arrays for an unknown user"""
        code = self.user_index.get_indexer([user_id])[0]
        if code < 0:
            return self._items[:0], self._values[:0]
        pos = self.positions_for_user_code(code)
        return self._items[pos], self._values[pos]

    def ratings_for_item(self, item_id) -> Tuple[np.ndarray, np.ndarray]:
        """(user ids, ratings) of one item; empty arrays for an unknown item"""
        code = self.item_index.get_indexer([item_id])[0]
        if code < 0:
            return self._users[:0], self._values[:0]
        pos = self.positions_for_item_code(code)
        return self._users[pos], self._values[pos]

    def by_user(self) -> Iterator[Tuple[object, np.ndarray, np.ndarray]]:
        for code, user_id in enumerate(self.user_index):
            pos = self.positions_for_user_code(code)
            yield user_id, self._items[pos], self._values[pos]

    def by_item(self) -> Iterator[Tuple[object, np.ndarray, np.ndarray]]:
        for code, item_id in enumerate(self.item_index):
            pos = self.positions_for_item_code(code)
            yield item_id, self._users[pos], self._values[pos]
