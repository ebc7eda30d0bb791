#!/usr/bin/env python
# coding: utf-8


"""
Exception hierarchy for the funnorm pipeline.

All fatal conditions raised by the package derive from :class:`FunnormError`
so callers can trap package failures with a single ``except`` clause, while
each class also inherits from the closest builtin (``ValueError``,
``FileNotFoundError``, ``RuntimeError``) so generic handlers keep working.
"""

from __future__ import annotations

from typing import Any, List, Sequence


class FunnormError(Exception):
    """Base class for all funnorm errors."""


class MissingFileError(FunnormError, FileNotFoundError):
    """The intensity store for a sample basename is absent."""


class InvalidAnnotationError(FunnormError, ValueError):
    """The probe annotation table is malformed, too small or inconsistent with the data."""


class InvalidSexLabelError(FunnormError, ValueError):
    """A declared sex label is not one of NA, "M" or "F"."""


class InsufficientSamplesError(FunnormError, ValueError):
    """Fewer than two samples were supplied to a cross-sample step."""


class InvalidObjectError(FunnormError, ValueError):
    """A normalization object is missing required fields or has a foreign origin."""


class ConfigurationError(FunnormError, ValueError):
    """An option or memory budget is outside its valid range."""


class BoundedMapError(FunnormError, RuntimeError):
    """
    One or more items failed inside :func:`funnorm.core.parallel.bounded_map`.

    Attributes
    ----------
    failures : list of ItemFailure
        One record per failed item, in item order.
    results : list
        Full ordered result list; failed positions hold their ``ItemFailure``.
    """

    def __init__(self, failures: Sequence[Any], results: List[Any]) -> None:
        self.failures = list(failures)
        self.results = results
        first = self.failures[0] if self.failures else None
        super().__init__(
            f"{len(self.failures)} of {len(results)} item(s) failed"
            + (f"; first failure at index {first.index}: {first.error!r}" if first else "")
        )
