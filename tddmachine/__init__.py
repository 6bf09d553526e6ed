"""TDD Machine: an autonomous red-green-refactor loop controller."""

from tddmachine.identity import __version__

__all__ = ["__version__"]
