"""
movielens_cf
============
Collaborative filtering estimators and a cross-validation harness for
explicit ratings (MovieLens style).
"""

from .base import Estimator
from .baselines import DampedBaseline, GlobalMean, PerIdMean
from .config import ExperimentConfig, config
from .evaluation import (
    compare_models,
    cross_validate,
    evaluate,
    grid_search,
    kfold_split,
    mae,
    ndcg_at_k,
    rmse,
    summarize,
)
from .exceptions import ConfigurationError, DataError
from .latent_factor import ALSEstimator, SGDEstimator
from .neighborhood import KNNEstimator
from .rating_store import Rating, RatingStore

__version__ = '0.1.0'

__all__ = [
    'ALSEstimator',
    'ConfigurationError',
    'DataError',
    'DampedBaseline',
    'Estimator',
    'ExperimentConfig',
    'GlobalMean',
    'KNNEstimator',
    'PerIdMean',
    'Rating',
    'RatingStore',
    'SGDEstimator',
    'compare_models',
    'config',
    'cross_validate',
    'evaluate',
    'grid_search',
    'kfold_split',
    'mae',
    'ndcg_at_k',
    'rmse',
    'summarize',
]
