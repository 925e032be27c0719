"""
Evaluation Harness
==================
k-fold cross-validation for any estimator, with per-fold metrics:

- MAE: mean absolute error of the held-out predictions
- RMSE: root mean squared error of the held-out predictions
- NDCG@k: per-user ranking quality of the held-out items, averaged over users

Per-fold values are returned rather than only their mean, so the
variance across folds stays visible.
"""

import re
import time
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from sklearn.metrics import mean_absolute_error, mean_squared_error
from sklearn.model_selection import KFold, ParameterGrid

from .base import Estimator
from .config import config
from .exceptions import ConfigurationError
from .rating_store import RatingStore


DEFAULT_METRICS = ('mae', f'ndcg@{config.NDCG_K}')

_METRIC_PATTERN = re.compile(r'^(mae|rmse|ndcg@([1-9]\d*))$')


# ============================================================================
# Evaluation Metrics
# ============================================================================

def mae(actuals, predictions) -> float:
    return float(mean_absolute_error(actuals, predictions))


def rmse(actuals, predictions) -> float:
    return float(np.sqrt(mean_squared_error(actuals, predictions)))


def _dcg(ranked: pd.DataFrame, k: int) -> pd.Series:
    """DCG@k per user of a frame already sorted into per-user rank order"""
    rank = ranked.groupby('user', sort=False).cumcount() + 1
    in_top = rank <= k
    gains = ranked.loc[in_top, 'actual'] / np.log2(rank[in_top] + 1)
    return gains.groupby(ranked.loc[in_top, 'user']).sum()


def ndcg_at_k(users, items, actuals, predictions, k: int = config.NDCG_K) -> float:
    """
    Mean NDCG@k over users

    Each user's items are ranked by predicted score (ties by item id) and
    scored with gain = actual rating and discount log2(rank + 1). Users
    whose ideal DCG is 0 are left out.

    Args:
        users: User id of each held-out rating
        items: Item id of each held-out rating
        actuals: Actual ratings (relevance)
        predictions: Predicted ratings
        k: Ranking cut-off

    Returns:
        Mean NDCG@k in [0, 1], or nan when no user qualifies
    """
    frame = pd.DataFrame({
        'user': np.asarray(users),
        'item': np.asarray(items),
        'actual': np.asarray(actuals, dtype=float),
        'pred': np.asarray(predictions, dtype=float)
    })

    dcg = _dcg(frame.sort_values(['user', 'pred', 'item'], ascending=[True, False, True]), k)
    ideal = _dcg(frame.sort_values(['user', 'actual', 'item'], ascending=[True, False, True]), k)

    valid = ideal > 0
    if not valid.any():
        return float('nan')
    ratio = dcg.reindex(ideal.index) / ideal
    return float(ratio[valid].mean())


def _score_mae(test: RatingStore, predictions: np.ndarray) -> float:
    return mae(test.values, predictions)


def _score_rmse(test: RatingStore, predictions: np.ndarray) -> float:
    return rmse(test.values, predictions)


def _score_ndcg(test: RatingStore, predictions: np.ndarray, k: int) -> float:
    return ndcg_at_k(test.users, test.items, test.values, predictions, k)


def parse_metrics(metrics: Iterable[str]) -> Dict[str, Callable]:
    """
    Resolve metric names ('mae', 'rmse', 'ndcg@<k>') to scoring functions

    Raises:
        ConfigurationError: For an empty list or an unknown name
    """
    if isinstance(metrics, str):
        metrics = [metrics]

    resolved = {}
    for name in metrics:
        match = _METRIC_PATTERN.match(str(name).lower())
        if match is None:
            raise ConfigurationError(f"Unknown metric: {name!r} (use 'mae', 'rmse' or 'ndcg@<k>')")

        key = match.group(1)
        if key == 'mae':
            resolved[key] = _score_mae
        elif key == 'rmse':
            resolved[key] = _score_rmse
        else:
            resolved[key] = partial(_score_ndcg, k=int(match.group(2)))

    if not resolved:
        raise ConfigurationError("At least one metric is required")
    return resolved


def higher_is_better(metric: str) -> bool:
    return metric.lower().startswith('ndcg')


# ============================================================================
# Cross-validation
# ============================================================================

def kfold_split(
    store: RatingStore,
    n_folds: int = config.CV_FOLDS,
    random_state: Optional[int] = config.RANDOM_STATE
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Partition rating positions into shuffled, disjoint folds

    Returns:
        List of (train_positions, test_positions), one per fold
    """
    if isinstance(n_folds, bool) or not isinstance(n_folds, (int, np.integer)) or n_folds < 2:
        raise ConfigurationError(f"n_folds must be an integer >= 2, got {n_folds!r}")
    if n_folds > len(store):
        raise ConfigurationError(f"n_folds={n_folds} exceeds the number of ratings ({len(store)})")

    kfold = KFold(n_splits=n_folds, shuffle=True, random_state=random_state)
    return list(kfold.split(np.arange(len(store))))


def evaluate(
    estimator: Estimator,
    train: RatingStore,
    test: RatingStore,
    metrics: Iterable[str] = DEFAULT_METRICS
) -> Dict[str, float]:
    """
    Fit an estimator on train and score it on test

    Returns:
        Dictionary of metric values plus fit_time and predict_time (seconds)
    """
    scorers = parse_metrics(metrics)
    return _fit_and_score(estimator, train, test, scorers)


def _fit_and_score(estimator, train, test, scorers) -> Dict[str, float]:
    start_time = time.time()
    estimator.fit(train)
    fit_time = time.time() - start_time

    pred_start = time.time()
    predictions = estimator.predict(test)
    predict_time = time.time() - pred_start

    result = {name: scorer(test, predictions) for name, scorer in scorers.items()}
    result['fit_time'] = fit_time
    result['predict_time'] = predict_time
    return result


def _run_fold(fold, store, train_idx, test_idx, estimator_factory, scorers) -> Dict:
    train = store.subset(train_idx)
    test = store.subset(test_idx)
    result = {'fold': fold, 'n_train': len(train), 'n_test': len(test)}
    result.update(_fit_and_score(estimator_factory(), train, test, scorers))
    return result


def _print_fold(row: Dict, n_folds: int, scorers: Dict[str, Callable]):
    scores = ", ".join(f"{name.upper()}: {row[name]:.4f}" for name in scorers)
    print(f"  [Fold {row['fold']}/{n_folds}] {scores} ({row['fit_time']:.1f}s)", flush=True)


def cross_validate(
    store: RatingStore,
    estimator_factory: Callable[[], Estimator],
    n_folds: int = config.CV_FOLDS,
    metrics: Iterable[str] = DEFAULT_METRICS,
    random_state: Optional[int] = config.RANDOM_STATE,
    n_jobs: int = 1,
    verbose: bool = False
) -> pd.DataFrame:
    """
    k-fold cross-validation of one estimator

    Every fold trains a fresh estimator from ``estimator_factory`` on the
    other folds and scores it on the held-out fold. Folds are independent
    and run in parallel when ``n_jobs`` != 1.

    Args:
        store: Full rating data (read-only)
        estimator_factory: Zero-argument callable returning an unfitted estimator
        n_folds: Number of folds (>= 2)
        metrics: Metric names, e.g. ('mae', 'ndcg@10')
        random_state: Seed of the fold shuffle
        n_jobs: Number of parallel fold workers (-1: all cores)
        verbose: Print each fold's scores, as it finishes when running
            serially and once all folds are done when running in parallel

    Returns:
        DataFrame with one row per fold: fold, n_train, n_test, metric
        columns, fit_time, predict_time
    """
    if not callable(estimator_factory):
        raise ConfigurationError("estimator_factory must be callable")
    scorers = parse_metrics(metrics)
    splits = kfold_split(store, n_folds, random_state)

    if verbose:
        print(f"  Cross-validation: {n_folds}-Fold CV", flush=True)

    if effective_n_jobs(n_jobs) == 1:
        rows = []
        for fold, (train_idx, test_idx) in enumerate(splits, 1):
            rows.append(_run_fold(fold, store, train_idx, test_idx, estimator_factory, scorers))
            if verbose:
                _print_fold(rows[-1], n_folds, scorers)
    else:
        rows = Parallel(n_jobs=n_jobs)(
            delayed(_run_fold)(fold, store, train_idx, test_idx, estimator_factory, scorers)
            for fold, (train_idx, test_idx) in enumerate(splits, 1)
        )
        if verbose:
            for row in rows:
                _print_fold(row, n_folds, scorers)

    columns = ['fold', 'n_train', 'n_test'] + list(scorers) + ['fit_time', 'predict_time']
    return pd.DataFrame(rows, columns=columns)


def compare_models(
    store: RatingStore,
    models: Dict[str, Callable[[], Estimator]],
    n_folds: int = config.CV_FOLDS,
    metrics: Iterable[str] = DEFAULT_METRICS,
    random_state: Optional[int] = config.RANDOM_STATE,
    n_jobs: int = 1,
    verbose: bool = False,
    model_n_jobs: Optional[Dict[str, int]] = None
) -> pd.DataFrame:
    """
    Cross-validate several estimators on the same folds

    ``model_n_jobs`` overrides ``n_jobs`` for the named models, e.g. to run
    fewer parallel folds for memory-heavy estimators.

    Returns:
        Per-fold, per-model table (a 'model' column plus the
        ``cross_validate`` columns)
    """
    metrics = list(parse_metrics(metrics))
    tables = []

    for idx, (name, factory) in enumerate(models.items(), 1):
        if verbose:
            print(f"\n[{idx}/{len(models)}] {name}")
        jobs = (model_n_jobs or {}).get(name, n_jobs)
        table = cross_validate(store, factory, n_folds, metrics, random_state, jobs, verbose)
        table.insert(0, 'model', name)
        tables.append(table)

    return pd.concat(tables, ignore_index=True)


def summarize(table: pd.DataFrame) -> pd.DataFrame:
    """Mean and standard deviation of every metric per model"""
    metrics = [c for c in table.columns if _METRIC_PATTERN.match(c)]
    summary = table.groupby('model', sort=False)[metrics + ['fit_time']].agg(['mean', 'std'])
    summary.columns = [f"{metric}_{stat}" for metric, stat in summary.columns]
    return summary.reset_index()


# ============================================================================
# Hyperparameter Search Functions
# ============================================================================

def grid_search(
    store: RatingStore,
    estimator_class: type,
    param_grid: Dict[str, Sequence],
    n_folds: int = 3,
    metric: str = 'mae',
    random_state: Optional[int] = config.RANDOM_STATE,
    n_jobs: int = 1,
    verbose: bool = False
) -> Tuple[Dict, pd.DataFrame]:
    """
    Perform grid search for optimal hyperparameters

    Args:
        store: Rating data to cross-validate on
        estimator_class: Estimator class, called with each parameter set
        param_grid: Dictionary of hyperparameter options to search
        n_folds: Number of cross-validation folds per combination
        metric: Metric to optimise ('mae', 'rmse' or 'ndcg@<k>')
        random_state: Seed of the fold shuffle
        n_jobs: Number of parallel fold workers
        verbose: Print progress per combination

    Returns:
        Tuple of (best_params, results) where results holds the mean and
        std of the metric per combination, best first
    """
    metric = list(parse_metrics([metric]))[0]
    candidates = list(ParameterGrid(param_grid))

    # Reject invalid settings before any training run
    for params in candidates:
        estimator_class(**params)

    if verbose:
        print(f"  Parameter combinations to search: {len(candidates)}")
        print(f"  Total training runs: {len(candidates) * n_folds}")

    rows = []
    for idx, params in enumerate(candidates, 1):
        table = cross_validate(
            store, partial(estimator_class, **params), n_folds, [metric], random_state, n_jobs
        )
        rows.append({
            'params': params,
            f'{metric}_mean': table[metric].mean(),
            f'{metric}_std': table[metric].std()
        })
        if verbose:
            print(f"  [{idx}/{len(candidates)}] {params} → {metric.upper()}: {table[metric].mean():.4f}")

    results = pd.DataFrame(rows).sort_values(
        f'{metric}_mean', ascending=not higher_is_better(metric), kind='mergesort'
    ).reset_index(drop=True)
    best_params = results.loc[0, 'params']

    if verbose:
        print(f"\n  Best parameters: {best_params}")

    return best_params, results
