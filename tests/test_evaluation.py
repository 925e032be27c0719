from functools import partial

import numpy as np
import pandas as pd
import pytest

from movielens_cf import (
    ConfigurationError,
    DampedBaseline,
    GlobalMean,
    PerIdMean,
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
from movielens_cf.evaluation import parse_metrics


def test_mae_and_rmse():
    assert mae([1, 2, 3], [2, 2, 5]) == pytest.approx(1.0)
    assert rmse([1, 2, 3], [2, 2, 5]) == pytest.approx(np.sqrt(5 / 3))


def test_ndcg_perfect_order_is_one():
    users = [1, 1, 1, 2, 2]
    items = [10, 11, 12, 10, 11]
    actuals = [5.0, 3.0, 1.0, 2.0, 4.0]
    predictions = [4.9, 3.2, 0.5, 1.0, 2.0]
    assert ndcg_at_k(users, items, actuals, predictions, k=10) == 1.0


def test_ndcg_reversed_order():
    actuals = [3.0, 2.0, 1.0]
    predictions = [0.1, 0.2, 0.3]
    dcg = 1 / np.log2(2) + 2 / np.log2(3) + 3 / np.log2(4)
    ideal = 3 / np.log2(2) + 2 / np.log2(3) + 1 / np.log2(4)
    score = ndcg_at_k([7, 7, 7], [1, 2, 3], actuals, predictions, k=3)
    assert score == pytest.approx(dcg / ideal)
    assert 0.0 <= score <= 1.0


def test_ndcg_cut_off():
    actuals = [1.0, 5.0, 4.0]
    predictions = [3.0, 2.0, 1.0]
    # top-1 by prediction is the item rated 1, the ideal top-1 is rated 5
    assert ndcg_at_k([1, 1, 1], [1, 2, 3], actuals, predictions, k=1) == pytest.approx(1 / 5)


def test_ndcg_averages_users_and_skips_zero_relevance():
    users = [1, 1, 2, 2, 3]
    items = [1, 2, 1, 2, 1]
    actuals = [4.0, 2.0, 2.0, 4.0, 0.0]
    predictions = [2.0, 1.0, 2.0, 1.0, 3.0]
    first = 1.0
    second = (2 + 4 / np.log2(3)) / (4 + 2 / np.log2(3))
    assert ndcg_at_k(users, items, actuals, predictions, k=5) == pytest.approx((first + second) / 2)
    assert np.isnan(ndcg_at_k([1], [1], [0.0], [1.0], k=5))


def test_ndcg_in_unit_interval_for_random_rankings():
    rng = np.random.default_rng(5)
    for _ in range(20):
        users = rng.integers(0, 5, size=30)
        items = np.arange(30)
        actuals = rng.integers(1, 6, size=30).astype(float)
        predictions = rng.random(30)
        score = ndcg_at_k(users, items, actuals, predictions, k=4)
        assert 0.0 <= score <= 1.0


def test_parse_metrics():
    metrics = parse_metrics(['MAE', 'rmse', 'ndcg@5'])
    assert list(metrics) == ['mae', 'rmse', 'ndcg@5']
    for bad in (['mse'], ['ndcg@0'], ['ndcg'], []):
        with pytest.raises(ConfigurationError):
            parse_metrics(bad)


def test_two_folds_on_four_ratings(tiny_store):
    folds = kfold_split(tiny_store, n_folds=2)
    assert len(folds) == 2

    test_a, test_b = folds[0][1], folds[1][1]
    assert set(test_a).isdisjoint(test_b)
    assert sorted(np.concatenate([test_a, test_b])) == [0, 1, 2, 3]
    for train_idx, test_idx in folds:
        assert sorted(np.concatenate([train_idx, test_idx])) == [0, 1, 2, 3]


def test_folds_are_reproducible(store):
    a = kfold_split(store, n_folds=3, random_state=9)
    b = kfold_split(store, n_folds=3, random_state=9)
    for (_, test_a), (_, test_b) in zip(a, b):
        np.testing.assert_array_equal(test_a, test_b)


@pytest.mark.parametrize('n_folds', [1, 0, 5, 2.0, True])
def test_invalid_fold_count(tiny_store, n_folds):
    with pytest.raises(ConfigurationError):
        kfold_split(tiny_store, n_folds=n_folds)


def test_cross_validate_table(tiny_store):
    table = cross_validate(tiny_store, GlobalMean, n_folds=2, metrics=['mae', 'ndcg@3'])
    assert list(table.columns) == ['fold', 'n_train', 'n_test', 'mae', 'ndcg@3',
                                   'fit_time', 'predict_time']
    assert list(table['fold']) == [1, 2]
    assert table['n_test'].sum() == 4
    assert (table['n_train'] + table['n_test'] == 4).all()


def test_cross_validate_mae_matches_manual_folds(store):
    table = cross_validate(store, DampedBaseline, n_folds=4, metrics=['mae'], random_state=1)

    expected = []
    for train_idx, test_idx in kfold_split(store, n_folds=4, random_state=1):
        train, test = store.subset(train_idx), store.subset(test_idx)
        expected.append(mae(test.values, DampedBaseline().fit(train).predict(test)))

    np.testing.assert_allclose(table['mae'], expected)


def test_cross_validate_parallel_matches_serial(store):
    factory = partial(DampedBaseline, damping=3.0)
    serial = cross_validate(store, factory, n_folds=3, metrics=['mae', 'ndcg@5'], n_jobs=1)
    parallel = cross_validate(store, factory, n_folds=3, metrics=['mae', 'ndcg@5'], n_jobs=2)
    pd.testing.assert_frame_equal(
        serial[['fold', 'mae', 'ndcg@5']], parallel[['fold', 'mae', 'ndcg@5']]
    )


def test_cross_validate_rejects_bad_settings(tiny_store):
    with pytest.raises(ConfigurationError):
        cross_validate(tiny_store, GlobalMean, n_folds=1)
    with pytest.raises(ConfigurationError):
        cross_validate(tiny_store, GlobalMean, n_folds=2, metrics=['accuracy'])
    with pytest.raises(ConfigurationError):
        cross_validate(tiny_store, GlobalMean(), n_folds=2)


def test_cross_validate_verbose_prints_folds(tiny_store, capsys):
    cross_validate(tiny_store, GlobalMean, n_folds=2, metrics=['mae'], verbose=True)
    output = capsys.readouterr().out
    assert '2-Fold CV' in output
    assert '[Fold 2/2] MAE:' in output


def test_evaluate(store):
    train, test = store.subset(np.arange(300)), store.subset(np.arange(300, len(store)))
    result = evaluate(PerIdMean(key='user'), train, test, metrics=['mae', 'rmse'])
    assert set(result) == {'mae', 'rmse', 'fit_time', 'predict_time'}
    assert result['rmse'] >= result['mae']


def test_compare_models_and_summary(store):
    models = {
        'Global Mean': GlobalMean,
        'Damped Baseline': partial(DampedBaseline, damping=5.0),
    }
    table = compare_models(store, models, n_folds=3, metrics=['mae', 'ndcg@5'])
    assert len(table) == 6
    assert list(table['model'].unique()) == ['Global Mean', 'Damped Baseline']

    summary = summarize(table)
    assert list(summary['model']) == ['Global Mean', 'Damped Baseline']
    assert {'mae_mean', 'mae_std', 'ndcg@5_mean', 'ndcg@5_std'} <= set(summary.columns)
    by_model = summary.set_index('model')
    assert by_model.loc['Damped Baseline', 'mae_mean'] < by_model.loc['Global Mean', 'mae_mean']


def test_grid_search(store):
    grid = {'damping': [0.0, 5.0, 1e12]}
    best_params, results = grid_search(store, DampedBaseline, grid, n_folds=3, metric='mae')
    assert best_params in [{'damping': d} for d in grid['damping']]
    assert best_params != {'damping': 1e12}
    assert list(results['mae_mean']) == sorted(results['mae_mean'])
    assert results.loc[0, 'params'] == best_params


def test_grid_search_ndcg_prefers_higher(store):
    grid = {'key': ['user', 'item']}
    _, results = grid_search(store, PerIdMean, grid, n_folds=3, metric='ndcg@5')
    assert list(results['ndcg@5_mean']) == sorted(results['ndcg@5_mean'], reverse=True)


def test_grid_search_rejects_invalid_grid_before_training(store):
    with pytest.raises(ConfigurationError):
        grid_search(store, DampedBaseline, {'damping': [1.0, -1.0]})


class ChattyMean(GlobalMean):
    def fit(self, train):
        print("fitting")
        return super().fit(train)


def test_cross_validate_serial_prints_each_fold_as_it_finishes(tiny_store, capsys):
    cross_validate(tiny_store, ChattyMean, n_folds=2, metrics=['mae'], n_jobs=1, verbose=True)
    lines = capsys.readouterr().out.splitlines()
    fits = [n for n, line in enumerate(lines) if line == 'fitting']
    first_fold = next(n for n, line in enumerate(lines) if '[Fold 1/2]' in line)
    assert fits[0] < first_fold < fits[1]


def test_compare_models_per_model_jobs(store):
    models = {'Global Mean': GlobalMean, 'Per-User Mean': partial(PerIdMean, key='user')}
    serial = compare_models(store, models, n_folds=3, metrics=['mae'])
    mixed = compare_models(store, models, n_folds=3, metrics=['mae'],
                           model_n_jobs={'Per-User Mean': 2})
    pd.testing.assert_series_equal(serial['mae'], mixed['mae'])
