"""Search errors."""


class SearchError(Exception):
    """Base exception for knowledge search errors."""

    pass


class SearchPreconditionError(SearchError, ValueError):
    """Required input for the chosen search mode is missing."""

    pass
