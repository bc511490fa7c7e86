"""Ready-to-use constant-derivative motion models.

The state holds, for each spatial dimension, a value and its derivatives up to ``order``:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2), ...

The highest derivative is modeled as constant over a time step, with an additive Gaussian noise.
Only the values (not the derivatives) are measured.

The builders return a :class:`~torch_lkf.KalmanFilter` configured through its validated setters.
"""

from __future__ import annotations

import math

import torch

from .kalman_filter import KalmanFilter


def _taylor_coefficients(order: int, dt: float) -> torch.Tensor:
    """Return (1, dt, dt^2 / 2!, ..., dt^order / order!)."""
    return torch.tensor([dt**k / math.factorial(k) for k in range(order + 1)], dtype=torch.float64)


def create_process_matrix(order: int, dt=1.0) -> torch.Tensor:
    r"""Create the transition block of a single dimension.

    Assuming the (order+1)-th derivative and above are zero, the Taylor expansion yields:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example:
        Second order (constant acceleration) with ``dt = 0.5``::

            [
                [1, 0.5, 0.125],
                [0, 1.0, 0.5],
                [0, 0.0, 1.0],
            ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Process matrix block (float64).
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order, dt)
    offsets = torch.arange(order + 1)
    lag = offsets[None, :] - offsets[:, None]  # j - i
    return torch.where(lag >= 0, coefficients[lag.clamp_min(0)], torch.zeros((), dtype=torch.float64))


def create_process_noise(process_std: float, order: int, dt=1.0) -> torch.Tensor:
    """Create the process noise block of a single dimension.

    A noise w ~ N(0, process_std**2) on the highest derivative propagates to the lower ones through
    the Taylor expansion, with a gain g_i = dt^(order - i) / (order - i)!. The resulting covariance is
    process_std**2 g gᵀ.

    Args:
        process_std (float): Standard deviation of the noise on the order-th derivative.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0

    Returns:
        torch.Tensor: Process noise block (float64).
            Shape: ``(order + 1, order + 1)``
    """
    gain = _taylor_coefficients(order, dt).flip(0)
    return process_std**2 * torch.outer(gain, gain)


def constant_kalman_filter(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    order_by_dim=False,
    **kwargs,
) -> KalmanFilter:
    """Create a constant-derivative Kalman filter.

    The state dimension is ``(order + 1) * dim``, and the measure dimension is ``dim``.

    Args:
        measurement_std (float | torch.Tensor): Measurement noise standard deviation.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Noise standard deviation on the order-th derivative.
            99.7% of its variations between two time steps should fall within ``±3 * process_std``.
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent dimensions (1D, 2D, 3D, ...).
            Default: 2
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity)
        dt (float): Time step duration.
            Default: 1.0
        order_by_dim (bool): State ordering convention.
            - True: group by dimension (e.g. ``x, x', y, y'``),
            - False: group by derivative order (e.g. ``x, y, x', y'``).
            Default: False
        **kwargs: Forwarded to :class:`KalmanFilter` (``joseph_update``, ``dtype``, ...).

    Returns:
        KalmanFilter: Filter with the constant-derivative process and measurement models.
    """
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=torch.float64), (dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float64), (dim,))

    block_matrix = create_process_matrix(order, dt)
    block_noise = create_process_noise(1.0, order, dt)
    variances = torch.diag(process_std**2)
    identity = torch.eye(dim, dtype=torch.float64)
    selection = torch.zeros(1, order + 1, dtype=torch.float64)
    selection[0, 0] = 1.0  # Only the values are measured

    if order_by_dim:
        process_matrix = torch.kron(identity, block_matrix)
        process_noise = torch.kron(variances, block_noise)
        measurement_matrix = torch.kron(identity, selection)
    else:
        process_matrix = torch.kron(block_matrix, identity)
        process_noise = torch.kron(block_noise, variances)
        measurement_matrix = torch.kron(selection, identity)

    kf = KalmanFilter((order + 1) * dim, dim, **kwargs)
    kf.set_process_model(process_matrix, process_noise)
    kf.set_measurement_model(measurement_matrix, torch.diag(measurement_std**2))
    return kf
