import numpy as np
import pandas as pd
import pytest

from movielens_cf import RatingStore


@pytest.fixture
def tiny_ratings():
    return [(1, 1, 5.0), (1, 2, 3.0), (2, 1, 4.0), (2, 2, 2.0)]


@pytest.fixture
def tiny_store(tiny_ratings):
    return RatingStore.load(tiny_ratings, min_rating=1, max_rating=5)


@pytest.fixture
def ratings_df():
    """Synthetic ratings with a low-rank structure, 40 users x 25 movies"""
    rng = np.random.default_rng(0)
    user_taste = rng.normal(size=(40, 2))
    movie_traits = rng.normal(size=(25, 2))
    scores = 3.0 + user_taste @ movie_traits.T + rng.normal(scale=0.3, size=(40, 25))

    observed = rng.random((40, 25)) < 0.5
    users, movies = np.nonzero(observed)
    ratings = np.clip(np.round(scores[users, movies] * 2) / 2, 0.5, 5.0)

    return pd.DataFrame({
        'userId': users + 1,
        'movieId': movies + 101,
        'rating': ratings,
        'timestamp': np.arange(len(ratings))
    })


@pytest.fixture
def store(ratings_df):
    return RatingStore.load(ratings_df)
