"""
Latent-Factor Estimators
========================
Biased matrix factorization trained by Alternating Least Squares (ALS)
or Stochastic Gradient Descent (SGD).

Both models predict

    r(u, i) = mu + b_u + b_i + x_u . y_i

with mu the (fixed) training mean, b_u / b_i learned biases and x_u / y_i
learned k-dimensional latent vectors. A query with a user or item unseen
in training is answered with mu. Predictions are clipped to the rating
scale only for an estimator built with clip=True.

Performance: ALS solves every user (then every item) independently. Each
thread block builds its normal equations in a Python loop, which holds the
GIL, and then solves them in one batched LAPACK call, which releases it;
only that second part overlaps across threads. SGD updates shared parameters after
every rating and stays a serial Python loop whose cost per epoch grows
linearly with the number of training ratings.
"""

from typing import Dict, List, Optional

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs
from scipy.linalg import LinAlgError, solve
from sklearn.metrics import mean_absolute_error

from .base import Estimator, check_count, check_positive, lookup
from .config import config
from .rating_store import RatingStore


class LatentFactorModel(Estimator):
    """Shared parameters, prediction formula and learning-curve history"""

    def __init__(self, n_factors: int, epochs: int,
                 random_state: Optional[int] = config.RANDOM_STATE, init_std: float = 0.1,
                 clip: bool = False):
        super().__init__(clip)
        check_count('n_factors', n_factors)
        check_count('epochs', epochs)
        check_positive('init_std', init_std, allow_zero=True)
        self.n_factors = n_factors
        self.epochs = epochs
        self.random_state = random_state
        self.init_std = init_std

    def _init_params(self, train: RatingStore) -> np.random.Generator:
        rng = np.random.default_rng(self.random_state)
        self.user_factors_ = rng.normal(0.0, self.init_std, (train.n_users, self.n_factors))
        self.item_factors_ = rng.normal(0.0, self.init_std, (train.n_items, self.n_factors))
        self.user_bias_ = np.zeros(train.n_users)
        self.item_bias_ = np.zeros(train.n_items)

        # Entities whose parameters could not be estimated answer with mu
        self.cold_users_ = np.zeros(train.n_users, dtype=bool)
        self.cold_items_ = np.zeros(train.n_items, dtype=bool)

        self.history_: List[Dict] = []
        return rng

    def _predict_codes(self, user_codes, item_codes):
        predictions = np.full(len(user_codes), self.global_mean)

        known = (user_codes >= 0) & (item_codes >= 0)
        known[known] &= ~self.cold_users_[user_codes[known]] & ~self.cold_items_[item_codes[known]]
        users, items = user_codes[known], item_codes[known]

        predictions[known] += (
            self.user_bias_[users]
            + self.item_bias_[items]
            + np.einsum('ij,ij->i', self.user_factors_[users], self.item_factors_[items])
        )
        return predictions

    def _error_on(self, store: RatingStore) -> float:
        user_codes = lookup(self.user_index_, store.users)
        item_codes = lookup(self.item_index_, store.items)
        predictions = self._finish(self._predict_codes(user_codes, item_codes))
        return mean_absolute_error(store.values, predictions)

    def _record_epoch(self, epoch: int, train: RatingStore, validation: Optional[RatingStore]):
        row = {'epoch': epoch, 'train_mae': self._error_on(train)}
        if validation is not None:
            row['valid_mae'] = self._error_on(validation)
        self.history_.append(row)


# ============================================================================
# ALS
# ============================================================================

def _solve_block(codes, positions_for, values, mu, other_codes,
                 other_bias, other_factors, penalty):
    """
    Ridge solve of [bias, factors] for a block of entities

    Each entity regresses its ratings, less mu and the fixed side's bias,
    on [1, other_factors]. The normal equations of the whole block are
    stacked and solved in one LAPACK call.

    Returns:
        Tuple of (biases, factors, failed) for the block
    """
    size = other_factors.shape[1] + 1
    lhs = np.empty((len(codes), size, size))
    rhs = np.empty((len(codes), size))

    for n, code in enumerate(codes):
        positions = positions_for(code)
        others = other_codes[positions]
        target = values[positions] - mu - other_bias[others]

        design = np.empty((len(positions), size))
        design[:, 0] = 1.0
        design[:, 1:] = other_factors[others]

        lhs[n] = design.T @ design + penalty
        rhs[n] = design.T @ target

    failed = np.zeros(len(codes), dtype=bool)
    try:
        solutions = np.linalg.solve(lhs, rhs[..., None])[..., 0]
    except LinAlgError:
        # Some system in the block is singular; find it one entity at a time
        solutions = np.zeros_like(rhs)
        for n in range(len(codes)):
            try:
                solutions[n] = solve(lhs[n], rhs[n], assume_a='pos')
            except LinAlgError:
                failed[n] = True

    failed |= ~np.isfinite(solutions).all(axis=1)
    solutions[failed] = 0.0
    return solutions[:, 0], solutions[:, 1:], failed


class ALSEstimator(LatentFactorModel):
    """
    Alternating Least Squares matrix factorization with biases

    Each epoch solves every user's bias and vector with items fixed, then
    every item's bias and vector with users fixed. Convergence is not
    detected; the model runs for ``epochs`` epochs.

    An entity whose system is singular (possible with zero regularization)
    gets zero parameters and is treated as cold.
    """

    name = 'ALS'

    def __init__(
        self,
        n_factors: int = 5,
        epochs: int = 15,
        reg_factors: float = 0.1,
        reg_bias: float = 0.1,
        random_state: Optional[int] = config.RANDOM_STATE,
        n_jobs: int = 1,
        init_std: float = 0.1,
        clip: bool = False
    ):
        super().__init__(n_factors, epochs, random_state, init_std, clip)
        check_positive('reg_factors', reg_factors, allow_zero=True)
        check_positive('reg_bias', reg_bias, allow_zero=True)
        self.reg_factors = reg_factors
        self.reg_bias = reg_bias
        self.n_jobs = n_jobs

    def fit(self, train: RatingStore, validation: Optional[RatingStore] = None) -> 'ALSEstimator':
        """
        Train ALS model on rating data

        Args:
            train: Training ratings
            validation: Optional held-out ratings tracked in ``history_``

        Returns:
            Self (trained model)
        """
        self._start_fit(train)
        self._init_params(train)

        penalty = np.diag([self.reg_bias] + [self.reg_factors] * self.n_factors)
        self.is_fitted = True

        for epoch in range(1, self.epochs + 1):
            self._solve_phase(
                train.n_users, train.positions_for_user_code, train, train.item_codes,
                self.item_bias_, self.item_factors_, penalty,
                self.user_bias_, self.user_factors_, self.cold_users_
            )
            self._solve_phase(
                train.n_items, train.positions_for_item_code, train, train.user_codes,
                self.user_bias_, self.user_factors_, penalty,
                self.item_bias_, self.item_factors_, self.cold_items_
            )
            self._record_epoch(epoch, train, validation)

        return self

    def _solve_phase(self, n_entities, positions_for, train, other_codes,
                     other_bias, other_factors, penalty, bias_out, factors_out, cold_out):
        n_blocks = min(max(effective_n_jobs(self.n_jobs), 1), n_entities)
        blocks = np.array_split(np.arange(n_entities), n_blocks)

        results = Parallel(n_jobs=self.n_jobs, prefer='threads')(
            delayed(_solve_block)(
                block, positions_for, train.values, self.global_mean,
                other_codes, other_bias, other_factors, penalty
            )
            for block in blocks
        )

        # Every block has finished before the fixed side is touched again
        for block, (biases, factors, failed) in zip(blocks, results):
            bias_out[block] = biases
            factors_out[block] = factors
            cold_out[block] = failed

    def __repr__(self) -> str:
        return (f"ALSEstimator(n_factors={self.n_factors}, epochs={self.epochs}, "
                f"reg_factors={self.reg_factors}, reg_bias={self.reg_bias})")


# ============================================================================
# SGD
# ============================================================================

class SGDEstimator(LatentFactorModel):
    """
    Stochastic Gradient Descent matrix factorization with biases

    Each epoch visits every training rating once, in a seeded random
    permutation of the (user, item) order, and steps b_u, b_i, x_u and y_i
    against the error e = r_hat - r. Vector updates use the other vector's
    value from before the step.
    """

    name = 'SGD'

    def __init__(
        self,
        n_factors: int = 50,
        epochs: int = 20,
        learning_rate: float = 0.01,
        reg_user_bias: float = 0.02,
        reg_item_bias: float = 0.02,
        reg_user_factors: float = 0.02,
        reg_item_factors: float = 0.02,
        random_state: Optional[int] = config.RANDOM_STATE,
        init_std: float = 0.1,
        clip: bool = False
    ):
        super().__init__(n_factors, epochs, random_state, init_std, clip)
        check_positive('learning_rate', learning_rate)
        for name, value in (('reg_user_bias', reg_user_bias), ('reg_item_bias', reg_item_bias),
                            ('reg_user_factors', reg_user_factors),
                            ('reg_item_factors', reg_item_factors)):
            check_positive(name, value, allow_zero=True)

        self.learning_rate = learning_rate
        self.reg_user_bias = reg_user_bias
        self.reg_item_bias = reg_item_bias
        self.reg_user_factors = reg_user_factors
        self.reg_item_factors = reg_item_factors

    def fit(self, train: RatingStore, validation: Optional[RatingStore] = None) -> 'SGDEstimator':
        """
        Train SGD model on rating data

        Args:
            train: Training ratings
            validation: Optional held-out ratings tracked in ``history_``

        Returns:
            Self (trained model)
        """
        self._start_fit(train)
        rng = self._init_params(train)
        self.is_fitted = True

        canonical = train.canonical_order()
        users = train.user_codes[canonical]
        items = train.item_codes[canonical]
        values = train.values[canonical]

        for epoch in range(1, self.epochs + 1):
            order = rng.permutation(len(values))
            self._run_epoch(users[order].tolist(), items[order].tolist(), values[order].tolist())
            self._record_epoch(epoch, train, validation)

        return self

    def _run_epoch(self, users, items, values):
        mu = self.global_mean
        lr = self.learning_rate
        user_bias, item_bias = self.user_bias_, self.item_bias_
        X, Y = self.user_factors_, self.item_factors_

        for u, i, r in zip(users, items, values):
            x_u = X[u].copy()
            y_i = Y[i].copy()
            error = mu + user_bias[u] + item_bias[i] + x_u @ y_i - r

            user_bias[u] -= lr * (error + self.reg_user_bias * user_bias[u])
            item_bias[i] -= lr * (error + self.reg_item_bias * item_bias[i])
            X[u] -= lr * (error * y_i + self.reg_user_factors * x_u)
            Y[i] -= lr * (error * x_u + self.reg_item_factors * y_i)

    def __repr__(self) -> str:
        return (f"SGDEstimator(n_factors={self.n_factors}, epochs={self.epochs}, "
                f"learning_rate={self.learning_rate})")
