"""
Base Recommender Class
======================
The fit/predict interface shared by every estimator, plus helpers to map
query identifiers onto a fitted model's contiguous indices.
"""

import numbers
from abc import ABC, abstractmethod
from typing import Iterable, List, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.exceptions import NotFittedError

from .exceptions import ConfigurationError
from .rating_store import ITEM_COL, USER_COL, RatingStore


Queries = Union[RatingStore, pd.DataFrame, Iterable[Tuple]]


def as_query_arrays(queries: Queries) -> Tuple[np.ndarray, np.ndarray]:
    """
    Normalise query pairs to (user ids, item ids) arrays

    Args:
        queries: RatingStore, DataFrame with (userId, movieId) columns,
            or an iterable of (user, item[, ...]) tuples

    Returns:
        Tuple of (user_ids, item_ids)
    """
    if isinstance(queries, RatingStore):
        return queries.users, queries.items
    if isinstance(queries, pd.DataFrame):
        return queries[USER_COL].to_numpy(), queries[ITEM_COL].to_numpy()

    pairs = [tuple(q)[:2] for q in queries]
    if not pairs:
        return np.array([]), np.array([])
    users, items = zip(*pairs)
    # pd.Index infers one dtype per column and keeps mixed ids (1, 'x') as objects
    return pd.Index(list(users)).to_numpy(), pd.Index(list(items)).to_numpy()


def lookup(index: pd.Index, ids: np.ndarray) -> np.ndarray:
    """Contiguous codes for ids; -1 marks an id unseen in training"""
    if len(ids) == 0:
        return np.empty(0, dtype=int)
    return index.get_indexer(ids)


def check_positive(name: str, value, allow_zero: bool = False):
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if np.isnan(value) or value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigurationError(f"{name} must be {bound}, got {value!r}")


def check_count(name: str, value):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")


def check_choice(name: str, value, choices):
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {sorted(choices)}, got {value!r}")


class Estimator(ABC):
    """Base class for all recommender models"""

    name = 'Estimator'

    def __init__(self, clip: bool = False):
        self.clip = clip  # Clip predictions to the training rating scale
        self.global_mean = 0.0  # Global average rating
        self.is_fitted = False  # Training status flag
        self.min_rating = None
        self.max_rating = None

    def _start_fit(self, train: RatingStore):
        self.global_mean = train.mean
        self.min_rating = train.min_rating
        self.max_rating = train.max_rating
        self.user_index_ = train.user_index
        self.item_index_ = train.item_index

    @abstractmethod
    def fit(self, train: RatingStore) -> 'Estimator':
        """Learn model parameters from training ratings; returns self"""

    @abstractmethod
    def _predict_codes(self, user_codes: np.ndarray, item_codes: np.ndarray) -> np.ndarray:
        """Raw predictions for contiguous codes (-1 = unseen)"""

    def predict(self, queries: Queries) -> np.ndarray:
        """
        Predict ratings for query pairs

        Args:
            queries: RatingStore, DataFrame or iterable of (user, item) pairs

        Returns:
            Array of predicted ratings; clipped to the training rating scale
            only when the estimator was built with clip=True
        """
        if not self.is_fitted:
            raise NotFittedError(f"{type(self).__name__} must be fitted before predict")

        users, items = as_query_arrays(queries)
        user_codes = lookup(self.user_index_, users)
        item_codes = lookup(self.item_index_, items)
        return self._finish(self._predict_codes(user_codes, item_codes))

    def _finish(self, predictions: np.ndarray) -> np.ndarray:
        if self.clip:
            return self.clip_predictions(predictions)
        return np.asarray(predictions, dtype=float)

    def clip_predictions(self, predictions: np.ndarray) -> np.ndarray:
        """Clip predictions to the rating range seen at fit time"""
        return np.clip(np.asarray(predictions, dtype=float), self.min_rating, self.max_rating)

    def recommend_for_user(self, user_id, all_items: List, rated_items: set,
                           n_recommendations: int = 10) -> List[Tuple]:
        """
        Generate item recommendations for a specific user

        Args:
            user_id: User ID to generate recommendations for
            all_items: List of all available item IDs
            rated_items: Set of item IDs already rated by the user
            n_recommendations: Number of recommendations to generate

        Returns:
            List of (item_id, predicted_rating) tuples, sorted by rating
        """
        candidates = [item for item in all_items if item not in rated_items]
        if not candidates:
            return []

        scores = self.predict([(user_id, item) for item in candidates])

        # Stable sort keeps the catalogue order among equal scores
        order = np.argsort(-scores, kind='stable')[:n_recommendations]
        return [(candidates[i], float(scores[i])) for i in order]

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
