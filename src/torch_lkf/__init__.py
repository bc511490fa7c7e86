"""Torch-LKF: a validated, stateful linear Kalman filter in PyTorch.

torch-lkf implements the core estimation loop of the classic discrete-time linear
Kalman filter: it keeps a running state estimate and its covariance, advances it
through a linear process model and corrects it against noisy measurements.

Key features
------------
- **Stateful filter**: construct with fixed dimensions, then call
  :meth:`~torch_lkf.KalmanFilter.predict` and :meth:`~torch_lkf.KalmanFilter.update`
  as measurements arrive. Sensible defaults make it usable right away.
- **Validated inputs**: every estimate/model replacement is checked (shape,
  finiteness, covariance diagonal) before being committed. A rejected call raises a
  typed error from :mod:`torch_lkf.errors` and leaves the filter untouched.
- **Distinguishable failures**: a singular innovation covariance raises
  :class:`~torch_lkf.errors.SingularMatrixError`, which is not a ``ValueError``.
- **Motion models**: :mod:`torch_lkf.models` builds constant position / velocity /
  acceleration filters.

Numerical notes
---------------
The standard covariance update ``P - K H P`` is used by default. If you encounter
numerical instability, consider switching to ``float64`` and enabling
``joseph_update=True`` on :class:`~torch_lkf.KalmanFilter`.

Notes on shapes
---------------
torch-lkf uses column vectors. Estimates, residuals and measures are returned with
shape ``(dim, 1)``. Vector inputs may be given either as ``(dim,)`` or ``(dim, 1)``.
"""

from .errors import (
    ConfigurationError,
    CovarianceError,
    InvalidInputError,
    KalmanFilterError,
    ShapeError,
    SingularMatrixError,
)
from .kalman_filter import Correction, GaussianState, KalmanFilter, Prediction

__all__ = [
    "ConfigurationError",
    "Correction",
    "CovarianceError",
    "GaussianState",
    "InvalidInputError",
    "KalmanFilter",
    "KalmanFilterError",
    "Prediction",
    "ShapeError",
    "SingularMatrixError",
]
__version__ = "0.1.0"
