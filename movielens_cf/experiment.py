"""
MovieLens Collaborative Filtering Comparison
============================================
End-to-end comparison of the collaborative filtering estimators

Included Algorithms:
- Global Mean, Per-Item Mean, Damped Baseline
- User-User kNN, Item-Item kNN
- ALS (Alternating Least Squares, biased)
- SGD (Stochastic Gradient Descent, biased)

Features:
- Hyperparameter tuning of the latent-factor models with cross-validation
- k-fold evaluation of every model (MAE, NDCG@k), reported per fold
- Top-10 movie recommendations for a sample user

Usage:
    python -m movielens_cf.experiment ml-latest-small/ratings.csv
"""

import sys
import time
from functools import partial
from typing import Dict, Optional

import pandas as pd
from joblib import effective_n_jobs

from .baselines import DampedBaseline, GlobalMean, PerIdMean
from .config import config
from .evaluation import DEFAULT_METRICS, compare_models, grid_search, summarize
from .latent_factor import ALSEstimator, SGDEstimator
from .neighborhood import KNNEstimator
from .rating_store import RatingStore


def get_param_grids(fast_mode: bool) -> Dict[str, Dict]:
    """Hyperparameter grids for the tuned models"""
    if fast_mode:
        return {
            'ALS': {
                'n_factors': [5, 10],
                'epochs': [10, 15],
                'reg_factors': [0.1]
            },
            'SGD': {
                'n_factors': [20, 50],
                'epochs': [12],
                'learning_rate': [0.01]
            }
        }

    return {
        'ALS': {
            'n_factors': [2, 5, 10, 20, 40],
            'epochs': [5, 10, 15, 20],
            'reg_factors': [0.01, 0.1, 1.0, 10.0],
            'reg_bias': [0.1, 1.0]
        },
        'SGD': {
            'n_factors': [10, 20, 50, 100],
            'epochs': [12, 20, 30],
            'learning_rate': [0.005, 0.01],
            'reg_user_factors': [0.02, 0.1],
            'reg_item_factors': [0.02, 0.1]
        }
    }


def recommend_movies_for_user(
    model,
    user_id,
    store: RatingStore,
    n_recommendations: int = 10
) -> pd.DataFrame:
    """
    Generate movie recommendations for a specific user

    Args:
        model: Fitted estimator
        user_id: Target user ID for recommendations
        store: Full rating data (defines the catalogue and the rated movies)
        n_recommendations: Number of movies to recommend

    Returns:
        DataFrame with columns (rank, userId, movieId, predicted_rating)
    """
    print("\n" + "=" * 70)
    print(f"Movie Recommendations for User {user_id}")
    print("=" * 70)
    print(f"Using Model: {model.name}")

    rated_movies, user_ratings = store.ratings_for_user(user_id)
    print(f"\nUser {user_id} Statistics:")
    print(f"  Total movies rated: {len(rated_movies)}")
    if len(user_ratings) > 0:
        print(f"  Average rating: {user_ratings.mean():.2f}")
        print(f"  Rating range: {user_ratings.min():.1f} - {user_ratings.max():.1f}")

    recommendations = model.recommend_for_user(
        user_id, list(store.item_index), set(rated_movies), n_recommendations
    )

    print(f"\n{'Rank':<6} {'Movie ID':<15} {'Predicted Rating':<20}")
    print("-" * 70)
    for rank, (movie_id, pred_rating) in enumerate(recommendations, 1):
        print(f"{rank:<6} {movie_id!s:<15} {pred_rating:.4f}")

    rec_df = pd.DataFrame(recommendations, columns=['movieId', 'predicted_rating'])
    rec_df['rank'] = range(1, len(rec_df) + 1)
    rec_df['userId'] = user_id
    return rec_df[['rank', 'userId', 'movieId', 'predicted_rating']]


def run_experiment(
    ratings_df: pd.DataFrame,
    fast_mode: Optional[bool] = None,
    output_path: Optional[str] = 'cf_results.csv'
) -> pd.DataFrame:
    """
    Execute complete experimental pipeline

    Pipeline stages:
    1. Load and validate the ratings
    2. Hyperparameter search for ALS and SGD
    3. k-fold evaluation of all models on the same folds
    4. Top-10 recommendations using the best model

    Args:
        ratings_df: Ratings with columns (userId, movieId, rating[, timestamp])
        fast_mode: Small parameter grids; defaults to config.FAST_MODE
        output_path: CSV file for the per-fold results (None: do not save)

    Returns:
        Per-fold, per-model results table
    """
    fast_mode = config.FAST_MODE if fast_mode is None else fast_mode
    experiment_start = time.time()

    # Stage 1: Prepare data
    print("\n[Step 1] Loading ratings...")
    store = RatingStore.load(ratings_df, config.MIN_RATING, config.MAX_RATING)
    print(f"  Ratings:  {len(store):,}")
    print(f"  Users:    {store.n_users:,}")
    print(f"  Movies:   {store.n_items:,}")
    print(f"  Sparsity: {store.sparsity:.2%}")

    # Stage 2: Tune latent-factor models
    print("\n" + "=" * 70)
    print("FAST MODE (Limited Parameter Search)" if fast_mode else "FULL MODE (Extensive Parameter Search)")
    print("=" * 70)

    best_params = {}
    for name, estimator_class in (('ALS', ALSEstimator), ('SGD', SGDEstimator)):
        print(f"\n[{name}] Hyperparameter Search")
        params, _ = grid_search(
            store, estimator_class, get_param_grids(fast_mode)[name],
            n_folds=3, metric='mae', n_jobs=config.N_JOBS, verbose=True
        )
        best_params[name] = params

    # Stage 3: Evaluate all models
    models = {
        'Global Mean': GlobalMean,
        'Per-Item Mean': partial(PerIdMean, key='item'),
        'Damped Baseline': partial(DampedBaseline, damping=config.DAMPING),
        'User-User kNN': partial(KNNEstimator, mode='user', k=30, similarity='pearson'),
        'Item-Item kNN': partial(KNNEstimator, mode='item', k=30, similarity='pearson'),
        'ALS': partial(ALSEstimator, **best_params['ALS']),
        'SGD': partial(SGDEstimator, **best_params['SGD'])
    }

    print("\n" + "=" * 70)
    print("Starting Evaluation of All Models")
    print("=" * 70)

    # Each kNN fold holds a dense similarity matrix, so fewer run at once
    knn_jobs = min(effective_n_jobs(config.N_JOBS), config.KNN_N_JOBS)
    results_df = compare_models(
        store, models, n_folds=config.CV_FOLDS, metrics=DEFAULT_METRICS,
        n_jobs=config.N_JOBS, verbose=True,
        model_n_jobs={name: knn_jobs for name in models if name.endswith('kNN')}
    )

    # Stage 4: Display and save results
    summary_df = summarize(results_df).sort_values('mae_mean', kind='mergesort')

    print("\n\n" + "=" * 80)
    print("FINAL RESULTS")
    print("=" * 80)
    print("\nOverall Performance (Sorted by MAE):")
    print(summary_df.to_string(index=False))

    total_time = time.time() - experiment_start
    print(f"\nTotal experiment time: {total_time / 60:.1f} minutes")

    if output_path:
        results_df.to_csv(output_path, index=False)
        print(f"\nResults saved: {output_path}")

    # Stage 5: Recommendations from the best model, refit on all ratings
    best_name = summary_df['model'].iloc[0]
    best_model = models[best_name](clip=True).fit(store)
    recommend_movies_for_user(best_model, store.users[0], store, n_recommendations=10)

    return results_df


if __name__ == "__main__":
    ratings_path = sys.argv[1] if len(sys.argv) > 1 else 'ml-latest-small/ratings.csv'

    print("=" * 80)
    print("MovieLens Collaborative Filtering Comparison")
    print("=" * 80)
    print(f"Configuration: FAST_MODE={config.FAST_MODE}")
    print(f"Cross-validation: {config.CV_FOLDS}-Fold CV")
    print(f"Evaluation metrics: {', '.join(m.upper() for m in DEFAULT_METRICS)}")
    print("=" * 80)

    run_experiment(pd.read_csv(ratings_path))

    print("\n" + "=" * 80)
    print("Experiment completed!")
    print("=" * 80)
