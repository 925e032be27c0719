"""
Baseline Estimators
===================
Mean-based predictors of increasing refinement:

- GlobalMean: one constant, the training mean
- PerIdMean: mean rating per user or per item
- DampedBaseline: global mean plus damped user and item deviations
"""

from typing import Optional

import numpy as np

from .base import Estimator, check_choice, check_positive
from .config import config
from .rating_store import RatingStore


class GlobalMean(Estimator):
    """Predicts the training-set mean for every query"""

    name = 'Global Mean'

    def fit(self, train: RatingStore) -> 'GlobalMean':
        self._start_fit(train)
        self.is_fitted = True
        return self

    def _predict_codes(self, user_codes, item_codes):
        return np.full(len(user_codes), self.global_mean)


class PerIdMean(Estimator):
    """
    Mean rating grouped by user or by item

    Keys unseen in training fall back to the global mean.
    """

    def __init__(self, key: str = 'item', clip: bool = False):
        super().__init__(clip)
        check_choice('key', key, {'user', 'item'})
        self.key = key
        self.name = f"Per-{key.capitalize()} Mean"

    def fit(self, train: RatingStore) -> 'PerIdMean':
        self._start_fit(train)

        codes = train.user_codes if self.key == 'user' else train.item_codes
        size = train.n_users if self.key == 'user' else train.n_items

        sums = np.bincount(codes, weights=train.values, minlength=size)
        counts = np.bincount(codes, minlength=size)
        self.means_ = sums / counts

        self.is_fitted = True
        return self

    def _predict_codes(self, user_codes, item_codes):
        codes = user_codes if self.key == 'user' else item_codes
        predictions = np.full(len(codes), self.global_mean)
        known = codes >= 0
        predictions[known] = self.means_[codes[known]]
        return predictions

    def __repr__(self) -> str:
        return f"PerIdMean(key={self.key!r})"


class DampedBaseline(Estimator):
    """
    Global mean plus damped user and item deviations

    Fitting runs in order:
        mu  = mean of all training ratings
        b_u = sum(r_ui - mu) / (|I_u| + beta_u)
        b_i = sum(r_ui - b_u - mu) / (|U_i| + beta_i)

    The item deviation is taken from residuals after removing the user
    deviation. A large beta shrinks a deviation toward zero when an
    id has few ratings.
    """

    name = 'Damped Baseline'

    def __init__(
        self,
        damping: float = config.DAMPING,
        user_damping: Optional[float] = None,
        item_damping: Optional[float] = None,
        clip: bool = False
    ):
        super().__init__(clip)
        self.damping = damping
        self.user_damping = damping if user_damping is None else user_damping
        self.item_damping = damping if item_damping is None else item_damping
        check_positive('user_damping', self.user_damping, allow_zero=True)
        check_positive('item_damping', self.item_damping, allow_zero=True)

    def fit(self, train: RatingStore) -> 'DampedBaseline':
        self._start_fit(train)
        mu = self.global_mean
        users, items = train.user_codes, train.item_codes

        user_counts = np.bincount(users, minlength=train.n_users)
        user_sums = np.bincount(users, weights=train.values - mu, minlength=train.n_users)
        self.user_bias_ = user_sums / (user_counts + self.user_damping)

        residuals = train.values - mu - self.user_bias_[users]
        item_counts = np.bincount(items, minlength=train.n_items)
        item_sums = np.bincount(items, weights=residuals, minlength=train.n_items)
        self.item_bias_ = item_sums / (item_counts + self.item_damping)

        self.is_fitted = True
        return self

    def _predict_codes(self, user_codes, item_codes):
        predictions = np.full(len(user_codes), self.global_mean)

        known_users = user_codes >= 0
        predictions[known_users] += self.user_bias_[user_codes[known_users]]

        known_items = item_codes >= 0
        predictions[known_items] += self.item_bias_[item_codes[known_items]]

        return predictions

    def __repr__(self) -> str:
        return f"DampedBaseline(user_damping={self.user_damping}, item_damping={self.item_damping})"
