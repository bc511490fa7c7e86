"""Input validation for the Kalman filter.

These helpers gate every mutating entry point of :class:`~torch_lkf.KalmanFilter`.
They are pure: they either return silently or raise, and never modify their input.

Error messages always name the offending entity and the expected shape/constraint, e.g.
``"P must be a 3x3 matrix"`` or ``"main diagonal of Q must be greater than or equal to zero"``.
"""

from __future__ import annotations

import torch
import torch.linalg

from .errors import CovarianceError, InvalidInputError, ShapeError

# Relative tolerance (in machine epsilons) on negative eigenvalues for the optional PSD check
_PSD_EPS_FACTOR = 100


def as_tensor(value, name: str, *, dtype: torch.dtype, device: torch.device) -> torch.Tensor:
    """Convert a host value (tensor, numpy array, nested sequence, ...) into a tensor.

    Note that it may share memory with ``value``. Callers that store the result must clone it.

    Args:
        value (Any): Value to convert.
        name (str): Name of the entity (for error messages).
        dtype (torch.dtype): Target dtype.
        device (torch.device): Target device.

    Returns:
        torch.Tensor: The converted tensor.

    Raises:
        InvalidInputError: If ``value`` cannot be converted to a numeric tensor.
    """
    try:
        return torch.as_tensor(value, dtype=dtype, device=device)
    except (TypeError, ValueError, RuntimeError) as exc:
        raise InvalidInputError(f"{name} must be convertible to a numeric tensor") from exc


def check_finite(tensor: torch.Tensor, name: str) -> None:
    """Raise an InvalidInputError if any element of ``tensor`` is NaN or infinite."""
    if not torch.isfinite(tensor).all():
        raise InvalidInputError(f"{name} must not contain NaN or Inf")


def validate_vector(tensor: torch.Tensor, name: str, expected_length: int) -> None:
    """Check that ``tensor`` is a finite vector of the expected length.

    Both flat ``(dim,)`` and column ``(dim, 1)`` vectors are accepted.

    Raises:
        ShapeError: If the length or layout is wrong.
        InvalidInputError: If the vector contains NaN or Inf.
    """
    if tuple(tensor.shape) not in ((expected_length,), (expected_length, 1)):
        raise ShapeError(f"{name} must be a column vector of length {expected_length}")
    check_finite(tensor, name)


def validate_matrix(tensor: torch.Tensor, name: str, expected_shape: tuple[int, int]) -> None:
    """Check that ``tensor`` is a finite matrix of shape ``expected_shape``.

    Raises:
        ShapeError: If the shape is wrong.
        InvalidInputError: If the matrix contains NaN or Inf.
    """
    if tuple(tensor.shape) != tuple(expected_shape):
        raise ShapeError(f"{name} must be a {expected_shape[0]}x{expected_shape[1]} matrix")
    check_finite(tensor, name)


def validate_covariance(
    tensor: torch.Tensor, name: str, expected_shape: tuple[int, int], *, check_psd=False
) -> None:
    """Check that ``tensor`` is a valid covariance matrix.

    By default only the necessary diagonal condition is verified (all variances >= 0).
    A full positive semi-definiteness check can be enabled with ``check_psd``. It rejects
    more inputs (non-symmetric matrices, negative eigenvalues), for an extra
    eigen decomposition.

    Args:
        tensor (torch.Tensor): Matrix to validate.
            Shape: ``expected_shape``
        name (str): Name of the entity (for error messages).
        expected_shape (tuple[int, int]): Expected (square) shape.
        check_psd (bool): Also verify symmetry and non-negative eigenvalues.
            Default: False

    Raises:
        ShapeError: If the shape is wrong.
        InvalidInputError: If the matrix contains NaN or Inf.
        CovarianceError: If the main diagonal has a negative entry (or the matrix is not PSD).
    """
    validate_matrix(tensor, name, expected_shape)

    if (tensor.diagonal() < 0).any():
        raise CovarianceError(f"main diagonal of {name} must be greater than or equal to zero")

    if check_psd:
        if not torch.allclose(tensor, tensor.mT):
            raise CovarianceError(f"{name} must be symmetric positive semi-definite")

        eigenvalues = torch.linalg.eigvalsh(tensor)
        scale = eigenvalues.abs().max().clamp_min(1.0)
        tolerance = _PSD_EPS_FACTOR * torch.finfo(tensor.dtype).eps * tensor.shape[-1] * scale
        if (eigenvalues < -tolerance).any():
            raise CovarianceError(f"{name} must be symmetric positive semi-definite")
