"""Example filtering sinusoidal data with a constant derivative Kalman filter"""

import argparse
import logging
import math
from typing import Tuple

import matplotlib.pyplot as plt
import torch

from torch_lkf.models import constant_kalman_filter


def generate_data(n: int, w0: float, noise: float, amplitude: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """Generate sinusoidal data:

    x(t) = A sin(w0t)
    z(t) = x(t) + noise * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        w0 (float): Angular frequency
        noise (float): Gaussian noise standard deviation
        amplitude (float): Amplitude A of the sinus

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (T, 1, 1)
        torch.Tensor: z(t) measure for each state
            Shape: (T, 1, 1)
    """
    x = amplitude * torch.sin(w0 * torch.arange(n)[..., None, None])
    return x, x + noise * torch.randn_like(x)


def main(order: int, n: int, measurement_std: float, amplitude: float, nans: bool, outliers: bool):
    # Let's do 2 full periods of sinus
    w0 = 4 * math.pi / n

    # Empirically, w0^k / k! (and a sqrt(w0) for order 0) is a good bound of the process errors
    process_std = max(amplitude * w0 ** (order + 0.5 * (order == 0)) / math.factorial(order) / 5, 1e-7)

    print("Parameters")
    print(f"Kalman order: {order}")
    print(f"Measurement noise: {measurement_std}")
    print(f"Process noise: {process_std}")
    print("Data: z(t) = measurement_noise * N(0, 1) + sin(w0 t)")
    print(f"Using w0={w0} for {n} points")

    kf = constant_kalman_filter(measurement_std, process_std, dim=1, order=order)

    # Unknown initial state: estimation at 0, with a std of 3 times the expected amplitude of each derivative
    kf.initialise_estimate(
        torch.zeros(kf.state_dim),
        torch.diag(torch.tensor([amplitude * w0**k * 3 for k in range(order + 1)]) ** 2),
    )

    x, z = generate_data(n, w0, measurement_std, amplitude)
    if nans:
        z[n // 2 : n // 2 + n // 20] = torch.nan  # Create nan measures in the middle
    if outliers:
        z[:: n // 10] += 10 * measurement_std

    if not outliers:
        states = kf.filter(z, update_first=True, return_all=True)
    else:
        # Same loop as `filter`, but measures are gated with their Mahalanobis distance
        means, stds = [], []
        for t, measure in enumerate(z):
            if t:
                kf.predict()
            if not torch.isnan(measure).any() and kf.project().mahalanobis(measure) < 3.0:
                kf.update(measure)
            means.append(kf.mean[0, 0])
            stds.append(kf.covariance[0, 0].sqrt())

    print(kf)

    if not outliers:
        means = states.mean[:, 0, 0]
        stds = states.covariance[:, 0, 0].sqrt()
    else:
        means, stds = torch.stack(means), torch.stack(stds)

    print(f"Filtering MSE: {(means - x[:, 0, 0]).pow(2).mean()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(x[..., 0, 0], color="k", label="True trajectory - x = A sin(w0 t)")
    plt.plot(means, color="y", label="Filtered trajectory")
    plt.plot(z[..., 0, 0], "o", color="r", markersize=2.0, label="Observed trajectory - z = x + noise * N(0, 1)")
    plt.fill_between(torch.arange(n), means - 3 * stds, means + 3 * stds, color="y", alpha=0.5)

    plt.ylim(-amplitude * 1.4, amplitude * 1.4)

    plt.xlabel("t")
    plt.ylabel("x")

    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Kalman filter example, filtering a noisy sinus data")
    parser.add_argument(
        "--order",
        default=2,
        type=int,
        help="Order of the kalman filter (estimate derivative up to order to predict next pos)",
    )
    parser.add_argument("--noise", default=2.0, type=float, help="Observation noise")
    parser.add_argument("--amplitude", default=20, type=int, help="Amplitude of the signal")
    parser.add_argument("--n", default=500, type=int, help="Number of points")
    parser.add_argument("--nans", action="store_true", help="Some state will not be measured")
    parser.add_argument("--outliers", action="store_true", help="Add outliers and gate them")
    parser.add_argument("--verbose", action="store_true", help="Log skipped updates")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    main(args.order, args.n, args.noise, args.amplitude, args.nans, args.outliers)
