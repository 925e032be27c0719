"""
Neighborhood Estimator (KNN-CF)
===============================
User-user or item-item k-nearest-neighbor collaborative filtering.

Similarities are computed over co-rated entries with sparse matrix
products; queries with no usable neighbor fall back to the damped
baseline.
"""

import numpy as np
from scipy.sparse import csr_matrix

from .base import Estimator, check_choice, check_count, check_positive
from .baselines import DampedBaseline
from .config import config
from .rating_store import RatingStore


def _similarity_block(X, B, X2, rows: slice, similarity: str, min_support: int) -> np.ndarray:
    """Similarities of the rows in ``rows`` against every row"""
    Xr, Br = X[rows], B[rows]

    support = (Br @ B.T).toarray()
    xy = (Xr @ X.T).toarray()
    # xx_u[a, v]: sum of a's squared ratings over the columns a shares with v
    xx_u = (X2[rows] @ B.T).toarray()
    xx_v = (Br @ X2.T).toarray()

    if similarity == 'cosine':
        numerator = xy
        denominator = xx_u
        denominator *= xx_v
    else:
        sx_u = (Xr @ B.T).toarray()
        sx_v = (Br @ X.T).toarray()

        numerator = xy
        numerator *= support
        numerator -= sx_u * sx_v

        # Co-rated variances, scaled by the support
        xx_u *= support
        xx_u -= np.square(sx_u, out=sx_u)
        xx_v *= support
        xx_v -= np.square(sx_v, out=sx_v)
        del sx_u, sx_v
        denominator = np.maximum(xx_u, 0.0, out=xx_u)
        denominator *= np.maximum(xx_v, 0.0, out=xx_v)

    del xx_v
    np.sqrt(denominator, out=denominator)

    block = np.zeros_like(numerator)
    np.divide(numerator, denominator, out=block, where=denominator > 0)
    np.clip(block, -1.0, 1.0, out=block)
    block[support < max(min_support, 1)] = 0.0
    return block


def similarity_matrix(matrix: csr_matrix, similarity: str = 'cosine',
                      min_support: int = 1, block_size: int = 256) -> np.ndarray:
    """
    Pairwise similarity between the rows of a sparse rating matrix

    Both measures only use the columns two rows have in common. Pairs with
    fewer than ``min_support`` common columns, and the diagonal, are 0.

    The result is filled ``block_size`` rows at a time, so peak memory is
    the output plus a few (block_size, n_rows) temporaries.

    Args:
        matrix: Entity x other sparse matrix of ratings
        similarity: 'cosine' or 'pearson'
        min_support: Minimum number of co-ratings for a non-zero similarity
        block_size: Rows computed per block

    Returns:
        Dense (n_rows, n_rows) array of similarities in [-1, 1]
    """
    check_count('block_size', block_size)

    X = csr_matrix(matrix, dtype=float)
    B = X.copy()
    B.data = np.ones_like(B.data)
    X2 = X.multiply(X).tocsr()

    n_rows = X.shape[0]
    sim = np.empty((n_rows, n_rows))
    for start in range(0, n_rows, block_size):
        rows = slice(start, min(start + block_size, n_rows))
        sim[rows] = _similarity_block(X, B, X2, rows, similarity, min_support)

    np.fill_diagonal(sim, 0.0)
    return sim


class KNNEstimator(Estimator):
    """
    k-nearest-neighbor collaborative filtering

    mode='user': weighted average of the ratings given to the item by the
    k users most similar to the query user.
    mode='item': weighted average of the query user's ratings on the k
    items most similar to the query item.

    Only neighbors with positive similarity are used. Ties in similarity
    are broken by the lower identifier.
    """

    def __init__(
        self,
        mode: str = 'item',
        k: int = 30,
        similarity: str = 'pearson',
        min_support: int = 1,
        damping: float = config.DAMPING,
        clip: bool = False
    ):
        super().__init__(clip)
        check_choice('mode', mode, {'user', 'item'})
        check_choice('similarity', similarity, {'cosine', 'pearson'})
        check_count('k', k)
        check_count('min_support', min_support)
        check_positive('damping', damping, allow_zero=True)

        self.mode = mode
        self.k = k
        self.similarity = similarity
        self.min_support = min_support
        self.damping = damping
        self.name = f"{mode.capitalize()}-{mode.capitalize()} kNN"

    def fit(self, train: RatingStore) -> 'KNNEstimator':
        self._start_fit(train)
        self.train_ = train

        matrix = train.to_csr()
        if self.mode == 'item':
            matrix = matrix.T.tocsr()
        self.similarity_ = similarity_matrix(matrix, self.similarity, self.min_support)

        self.baseline_ = DampedBaseline(self.damping).fit(train)
        self.is_fitted = True
        return self

    def neighbors(self, user_code: int, item_code: int):
        """
        Ranked neighbors usable for one (user, item) query

        Returns:
            Tuple of (neighbor codes, similarities, ratings), best first,
            at most k long
        """
        train = self.train_
        if self.mode == 'user':
            entity = user_code
            positions = train.positions_for_item_code(item_code)
            candidates = train.user_codes[positions]
        else:
            entity = item_code
            positions = train.positions_for_user_code(user_code)
            candidates = train.item_codes[positions]

        sims = self.similarity_[entity, candidates]
        keep = (sims > 0) & (candidates != entity)
        candidates, sims = candidates[keep], sims[keep]
        ratings = train.values[positions][keep]

        # Codes follow identifier order, so the secondary key is the lower id
        order = np.lexsort((candidates, -sims))[:self.k]
        return candidates[order], sims[order], ratings[order]

    def _predict_codes(self, user_codes, item_codes):
        predictions = self.baseline_._predict_codes(user_codes, item_codes)

        for n, (u, i) in enumerate(zip(user_codes, item_codes)):
            if u < 0 or i < 0:
                continue
            _, weights, ratings = self.neighbors(u, i)
            total = weights.sum()
            if total > 0:
                predictions[n] = weights @ ratings / total

        return predictions

    def __repr__(self) -> str:
        return (f"KNNEstimator(mode={self.mode!r}, k={self.k}, "
                f"similarity={self.similarity!r}, min_support={self.min_support})")
