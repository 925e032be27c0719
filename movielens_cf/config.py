"""
Experiment configuration
========================
Default settings shared by the estimators, the evaluation harness and the
experiment pipeline.
"""

from dataclasses import dataclass


@dataclass
class ExperimentConfig:
    """Configuration settings for the experiment"""

    FAST_MODE: bool = False          # True: quick experiment, False: comprehensive grid search
    RANDOM_STATE: int = 42          # Random seed for reproducibility

    MIN_RATING: float = 0.5         # Minimum rating value
    MAX_RATING: float = 5.0         # Maximum rating value

    CV_FOLDS: int = 5               # Number of cross-validation folds
    N_JOBS: int = -1                # Number of CPU cores (-1: use all available cores)
    KNN_N_JOBS: int = 2             # Parallel folds for kNN (each holds a dense similarity matrix)

    NDCG_K: int = 10                # Cut-off for the NDCG ranking metric
    DAMPING: float = 25.0           # Default damping factor for the baselines


config = ExperimentConfig()
