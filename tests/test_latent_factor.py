import numpy as np
import pytest

from movielens_cf import (
    ALSEstimator,
    ConfigurationError,
    GlobalMean,
    RatingStore,
    SGDEstimator,
)
from movielens_cf.evaluation import mae


MODELS = [
    lambda: ALSEstimator(n_factors=3, epochs=5, random_state=7),
    lambda: SGDEstimator(n_factors=3, epochs=10, learning_rate=0.02, random_state=7),
]


@pytest.fixture
def shuffled_store(ratings_df):
    return RatingStore.load(ratings_df.sample(frac=1.0, random_state=3))


@pytest.mark.parametrize('make_model', MODELS)
def test_shared_prediction_formula(make_model, store):
    model = make_model().fit(store)
    user_id, item_id = store.users[5], store.items[5]
    u = model.user_index_.get_loc(user_id)
    i = model.item_index_.get_loc(item_id)

    expected = (model.global_mean + model.user_bias_[u] + model.item_bias_[i]
                + model.user_factors_[u] @ model.item_factors_[i])
    assert model.predict([(user_id, item_id)])[0] == pytest.approx(expected)


@pytest.mark.parametrize('model_class', [ALSEstimator, SGDEstimator])
def test_clip_option(model_class, store):
    queries = store.to_frame()[['userId', 'movieId']]
    raw = model_class(n_factors=3, epochs=3, random_state=7).fit(store).predict(queries)
    clipped = model_class(n_factors=3, epochs=3, random_state=7, clip=True).fit(store).predict(queries)
    np.testing.assert_allclose(clipped, np.clip(raw, store.min_rating, store.max_rating))


@pytest.mark.parametrize('make_model', MODELS)
def test_cold_start_returns_global_mean(make_model, store):
    model = make_model().fit(store)
    known_user, known_item = store.users[0], store.items[0]
    predictions = model.predict([(-1, known_item), (known_user, -1), (-1, -1)])
    np.testing.assert_array_equal(predictions, np.full(3, store.mean))


@pytest.mark.parametrize('make_model', MODELS)
def test_invariant_to_input_order(make_model, store, shuffled_store):
    queries = store.to_frame()[['userId', 'movieId']]
    a = make_model().fit(store).predict(queries)
    b = make_model().fit(shuffled_store).predict(queries)
    np.testing.assert_allclose(a, b, rtol=0, atol=1e-9)


@pytest.mark.parametrize('make_model', MODELS)
def test_fits_training_data_better_than_global_mean(make_model, store):
    model = make_model().fit(store)
    baseline = GlobalMean().fit(store)
    assert mae(store.values, model.predict(store)) < mae(store.values, baseline.predict(store))


@pytest.mark.parametrize('make_model', MODELS)
def test_history_records_each_epoch(make_model, store, tiny_store):
    validation = store.subset(np.arange(10))
    model = make_model()
    model.fit(store, validation=validation)

    assert [row['epoch'] for row in model.history_] == list(range(1, model.epochs + 1))
    assert all('valid_mae' in row for row in model.history_)
    assert model.history_[-1]['train_mae'] < model.history_[0]['train_mae']

    model.fit(tiny_store)
    assert len(model.history_) == model.epochs
    assert 'valid_mae' not in model.history_[0]


def test_sgd_seed_controls_result(store):
    queries = store.to_frame()[['userId', 'movieId']]
    a = SGDEstimator(n_factors=4, epochs=3, random_state=1).fit(store).predict(queries)
    b = SGDEstimator(n_factors=4, epochs=3, random_state=1).fit(store).predict(queries)
    c = SGDEstimator(n_factors=4, epochs=3, random_state=2).fit(store).predict(queries)
    np.testing.assert_array_equal(a, b)
    assert not np.allclose(a, c)


def test_sgd_update_uses_pre_update_vectors():
    store = RatingStore.load([(1, 1, 4.0)])
    lr, reg = 0.05, 0.1
    model = SGDEstimator(n_factors=3, epochs=1, learning_rate=lr, reg_user_bias=reg,
                         reg_item_bias=reg, reg_user_factors=reg, reg_item_factors=reg,
                         random_state=11)
    model.fit(store)

    rng = np.random.default_rng(11)
    x = rng.normal(0.0, 0.1, (1, 3))[0]
    y = rng.normal(0.0, 0.1, (1, 3))[0]
    error = x @ y  # mu equals the only rating and the biases start at 0

    assert model.user_bias_[0] == pytest.approx(-lr * error)
    assert model.item_bias_[0] == pytest.approx(-lr * error)
    np.testing.assert_allclose(model.user_factors_[0], x - lr * (error * y + reg * x))
    np.testing.assert_allclose(model.item_factors_[0], y - lr * (error * x + reg * y))


def test_als_singular_systems_fall_back_to_global_mean(store):
    # Zero-initialised factors without regularization make every system singular
    model = ALSEstimator(n_factors=2, epochs=2, reg_factors=0.0, init_std=0.0).fit(store)
    assert model.cold_users_.all()
    assert model.cold_items_.all()
    np.testing.assert_array_equal(model.predict(store), np.full(len(store), store.mean))


def test_als_parallel_blocks_match_serial(store):
    queries = store.to_frame()[['userId', 'movieId']]
    serial = ALSEstimator(n_factors=3, epochs=3, n_jobs=1).fit(store).predict(queries)
    parallel = ALSEstimator(n_factors=3, epochs=3, n_jobs=3).fit(store).predict(queries)
    np.testing.assert_allclose(serial, parallel, rtol=0, atol=1e-12)


def test_als_regularization_shrinks_parameters(store):
    loose = ALSEstimator(n_factors=3, epochs=5, reg_factors=0.01).fit(store)
    tight = ALSEstimator(n_factors=3, epochs=5, reg_factors=100.0).fit(store)
    assert np.abs(tight.user_factors_).mean() < np.abs(loose.user_factors_).mean()


@pytest.mark.parametrize('make_model', [
    lambda: ALSEstimator(n_factors=0),
    lambda: ALSEstimator(epochs=0),
    lambda: ALSEstimator(reg_factors=-1.0),
    lambda: ALSEstimator(reg_bias=-0.1),
    lambda: SGDEstimator(learning_rate=0.0),
    lambda: SGDEstimator(n_factors=-5),
    lambda: SGDEstimator(reg_item_factors=-0.02),
])
def test_invalid_configuration(make_model):
    with pytest.raises(ConfigurationError):
        make_model()
