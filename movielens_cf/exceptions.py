"""Exceptions raised by the rating store, the estimators and the harness."""


class DataError(ValueError):
    """A malformed or out-of-range rating was found while loading."""


class ConfigurationError(ValueError):
    """An estimator or harness setting is invalid."""
