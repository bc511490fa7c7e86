"""Exceptions raised by torch-lkf.

Every error derives from :class:`KalmanFilterError`. Input validation errors are also
``ValueError`` so that generic callers can keep catching them as such, whereas
:class:`SingularMatrixError` is an ``ArithmeticError``: it reports a degenerate model or
measurement, not a malformed argument, and callers usually react differently to it
(e.g. skip this measurement instead of aborting).
"""

from __future__ import annotations


class KalmanFilterError(Exception):
    """Base class of all torch-lkf errors."""


class ConfigurationError(KalmanFilterError, ValueError):
    """Invalid filter dimensions at construction."""


class ShapeError(KalmanFilterError, ValueError):
    """A vector or matrix does not have the expected dimensions."""


class InvalidInputError(KalmanFilterError, ValueError):
    """An input contains NaN/Inf values or cannot be converted to a tensor."""


class CovarianceError(KalmanFilterError, ValueError):
    """A covariance matrix is not a valid covariance (negative diagonal, not PSD)."""


class SingularMatrixError(KalmanFilterError, ArithmeticError):
    """The innovation covariance cannot be inverted."""
