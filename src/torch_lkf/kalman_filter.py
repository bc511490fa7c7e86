from __future__ import annotations

import contextlib
import dataclasses
import logging
import math
import numbers
from typing import overload

import torch
import torch.linalg

from .errors import ConfigurationError, ShapeError, SingularMatrixError
from .validation import as_tensor, validate_covariance, validate_matrix, validate_vector

logger = logging.getLogger(__name__)


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


@dataclasses.dataclass
class GaussianState:
    """Gaussian distribution x ~ N(mean, covariance).

    Vectors are **column vectors** with shape ``(..., dim, 1)``. Leading dimensions are only
    used to stack states in time (see :meth:`KalmanFilter.filter`).

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
            If ``None``, it is computed lazily when needed.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), None if self.precision is None else self.precision.clone()
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index the leading (time) dimensions."""
        return GaussianState(
            self.mean[idx], self.covariance[idx], None if self.precision is None else self.precision[idx]
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert the state to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            None if self.precision is None else self.precision.to(fmt),
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the squared Mahalanobis distance (x - μ)^T Σ^{-1} (x - μ) to a measure.

        Typical use is gating: ``kf.project().mahalanobis_squared(z) < threshold``
        before calling ``kf.update(z)``.

        Args:
            measure (torch.Tensor): Measure to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance.
                Shape: ``(...)``
        """
        diff = measure - self.mean
        if self.precision is None:
            self.precision = torch.linalg.inv(self.covariance)
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the Mahalanobis distance to a measure (square root of `mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of a measure under this distribution.

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood of the measure.
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        _, log_det = torch.linalg.slogdet(self.covariance)
        dim = self.covariance.shape[-1]
        return -0.5 * (dim * math.log(2 * math.pi) + log_det + maha_2)


@dataclasses.dataclass
class Prediction:
    """Result of :meth:`KalmanFilter.predict`.

    Attributes:
        prior: Predicted state estimate F x.
            Shape: ``(dim_x, 1)``
        prior_covariance: Predicted covariance F P F^T + Q.
            Shape: ``(dim_x, dim_x)``
    """

    prior: torch.Tensor
    prior_covariance: torch.Tensor


@dataclasses.dataclass
class Correction:
    """Result of :meth:`KalmanFilter.update`.

    Attributes:
        residual: Innovation y = z - H x.
            Shape: ``(dim_z, 1)``
        posterior: Updated state estimate x + K y.
            Shape: ``(dim_x, 1)``
        posterior_covariance: Updated covariance.
            Shape: ``(dim_x, dim_x)``
        kalman_gain: Kalman gain K = P H^T S^{-1}.
            Shape: ``(dim_x, dim_z)``
        innovation_covariance: Innovation covariance S = H P H^T + R.
            Shape: ``(dim_z, dim_z)``
    """

    residual: torch.Tensor
    posterior: torch.Tensor
    posterior_covariance: torch.Tensor
    kalman_gain: torch.Tensor
    innovation_covariance: torch.Tensor


class KalmanFilter:
    """Discrete-time linear Kalman filter holding its own running estimate.

    The filter estimates the hidden state of a linear dynamical system under Gaussian noise:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k     + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``dim_x``),
    - ``z_k`` is the measure (dimension ``dim_z``),
    - ``F`` is the transition (process) matrix,
    - ``Q`` is the process noise covariance,
    - ``H`` is the measurement/projection matrix,
    - ``R`` is the measurement noise covariance.

    Dimensions are fixed at construction. The filter starts with x = 0, P = I, F = I, Q = 0,
    H = I (truncated to dim_z x dim_x) and R = 0, and is immediately usable. The model and the
    estimate can be replaced with `set_process_model`, `set_measurement_model` and
    `initialise_estimate`: both arguments are validated before anything is replaced, so that a
    rejected call leaves the filter untouched. `predict` and `update` then mutate the estimate in place.

    Inputs may be tensors, numpy arrays or nested sequences. They are copied and converted to the
    filter dtype/device. Vectors are stored and returned as column vectors ``(dim, 1)``.

    A filter instance is not thread-safe: callers sharing it between threads must serialize all calls.

    Numerical notes:
    - The standard covariance update P - K H P is used by default. The Joseph form
    (I - K H) P (I - K H)^T + K R K^T is more robust to ill-conditioning but slower. It is enabled
    with ``joseph_update=True``. The active form is given by `covariance_update`.
    - Only the diagonal of covariance matrices is checked by default. Use ``check_psd=True`` to
    reject non-symmetric or non positive semi-definite covariances.

    Attributes:
        joseph_update (bool): If True, use the Joseph form covariance update.
            Default: False
        check_psd (bool): If True, fully validate covariance matrices (symmetry and eigenvalues).
            Default: False
    """

    _REPR_SPLIT_LENGTH = 110

    def __init__(
        self,
        state_dim: int,
        measure_dim: int,
        *,
        joseph_update=False,
        check_psd=False,
        dtype: torch.dtype | None = None,
        device: torch.device | str | None = None,
    ) -> None:
        if not (_is_positive_int(state_dim) and _is_positive_int(measure_dim)):
            raise ConfigurationError("state_dim and measure_dim must be greater than zero")

        if dtype is None:
            dtype = torch.get_default_dtype()
        if not dtype.is_floating_point:
            raise ConfigurationError("dtype must be a floating point dtype")

        self.joseph_update = joseph_update
        self.check_psd = check_psd

        state_dim, measure_dim = int(state_dim), int(measure_dim)
        self._mean = torch.zeros(state_dim, 1, dtype=dtype, device=device)
        self._covariance = torch.eye(state_dim, dtype=dtype, device=device)
        self._process_matrix = torch.eye(state_dim, dtype=dtype, device=device)
        self._process_noise = torch.zeros(state_dim, state_dim, dtype=dtype, device=device)
        self._measurement_matrix = torch.eye(measure_dim, state_dim, dtype=dtype, device=device)
        self._measurement_noise = torch.zeros(measure_dim, measure_dim, dtype=dtype, device=device)

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measurement_matrix.shape[-2]

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self._process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self._process_matrix.dtype

    @property
    def covariance_update(self) -> str:
        """Active covariance update form: "joseph" or "standard"."""
        return "joseph" if self.joseph_update else "standard"

    @property
    def mean(self) -> torch.Tensor:
        """Copy of the current state estimate x. Shape: ``(dim_x, 1)``."""
        return self._mean.clone()

    @property
    def covariance(self) -> torch.Tensor:
        """Copy of the current state covariance P. Shape: ``(dim_x, dim_x)``."""
        return self._covariance.clone()

    @property
    def state(self) -> GaussianState:
        """Copy of the current estimate as a GaussianState."""
        return GaussianState(self._mean.clone(), self._covariance.clone())

    @property
    def process_matrix(self) -> torch.Tensor:
        """Copy of the process matrix F. Shape: ``(dim_x, dim_x)``."""
        return self._process_matrix.clone()

    @property
    def process_noise(self) -> torch.Tensor:
        """Copy of the process noise covariance Q. Shape: ``(dim_x, dim_x)``."""
        return self._process_noise.clone()

    @property
    def measurement_matrix(self) -> torch.Tensor:
        """Copy of the measurement matrix H. Shape: ``(dim_z, dim_x)``."""
        return self._measurement_matrix.clone()

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Copy of the measurement noise covariance R. Shape: ``(dim_z, dim_z)``."""
        return self._measurement_noise.clone()

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter (model and current estimate) to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: A new filter with the right format. The current one is not modified.

        Raises:
            ConfigurationError: If fmt is a non floating point dtype.
        """
        if isinstance(fmt, torch.dtype) and not fmt.is_floating_point:
            raise ConfigurationError("dtype must be a floating point dtype")

        kf = KalmanFilter(
            self.state_dim, self.measure_dim, joseph_update=self.joseph_update, check_psd=self.check_psd
        )
        kf._mean = self._mean.to(fmt).clone()  # noqa: SLF001
        kf._covariance = self._covariance.to(fmt).clone()  # noqa: SLF001
        kf._process_matrix = self._process_matrix.to(fmt).clone()  # noqa: SLF001
        kf._process_noise = self._process_noise.to(fmt).clone()  # noqa: SLF001
        kf._measurement_matrix = self._measurement_matrix.to(fmt).clone()  # noqa: SLF001
        kf._measurement_noise = self._measurement_noise.to(fmt).clone()  # noqa: SLF001
        return kf

    def clone(self) -> KalmanFilter:
        """Return an independent copy of the filter (options, model and current estimate)."""
        return self.to(self.dtype)

    def initialise_estimate(self, mean, covariance) -> None:
        """Replace the current estimate x ~ N(mean, covariance).

        Args:
            mean (array-like): New state estimate x.
                Shape: ``(dim_x,)`` or ``(dim_x, 1)``
            covariance (array-like): New state covariance P.
                Shape: ``(dim_x, dim_x)``

        Raises:
            ShapeError, InvalidInputError, CovarianceError: If any of the inputs is invalid.
                The estimate is left unchanged.
        """
        mean = self._as_vector(mean, "x", self.state_dim)
        covariance = self._as_covariance(covariance, "P", (self.state_dim, self.state_dim))

        self._mean = mean
        self._covariance = covariance

    def set_process_model(self, process_matrix, process_noise) -> None:
        """Replace the process model (F, Q).

        Args:
            process_matrix (array-like): Process/Transition matrix F.
                Shape: ``(dim_x, dim_x)``
            process_noise (array-like): Process noise covariance Q.
                Shape: ``(dim_x, dim_x)``

        Raises:
            ShapeError, InvalidInputError, CovarianceError: If any of the inputs is invalid.
                The process model is left unchanged.
        """
        process_matrix = self._as_matrix(process_matrix, "F", (self.state_dim, self.state_dim))
        process_noise = self._as_covariance(process_noise, "Q", (self.state_dim, self.state_dim))

        self._process_matrix = process_matrix
        self._process_noise = process_noise
        logger.debug("Process model replaced (state dimension: %d)", self.state_dim)

    def set_measurement_model(self, measurement_matrix, measurement_noise) -> None:
        """Replace the measurement model (H, R).

        Args:
            measurement_matrix (array-like): Projection/Measurement matrix H.
                Shape: ``(dim_z, dim_x)``
            measurement_noise (array-like): Measurement noise covariance R.
                Shape: ``(dim_z, dim_z)``

        Raises:
            ShapeError, InvalidInputError, CovarianceError: If any of the inputs is invalid.
                The measurement model is left unchanged.
        """
        measurement_matrix = self._as_matrix(measurement_matrix, "H", (self.measure_dim, self.state_dim))
        measurement_noise = self._as_covariance(measurement_noise, "R", (self.measure_dim, self.measure_dim))

        self._measurement_matrix = measurement_matrix
        self._measurement_noise = measurement_noise
        logger.debug("Measurement model replaced (measure dimension: %d)", self.measure_dim)

    def predict(self) -> Prediction:
        """Advance the estimate through the process model.

        From the current estimate x ~ N(mu, P), it computes the prior on the next time step:

            mu <- F mu
            P  <- F P Fᵀ + Q

        The model and the estimate were validated when set, so nothing is checked here.

        Returns:
            Prediction: The prior estimate and covariance (copies of the new filter state).
        """
        mean = self._process_matrix @ self._mean
        covariance = self._process_matrix @ self._covariance @ self._process_matrix.mT + self._process_noise

        self._mean = mean
        self._covariance = covariance

        return Prediction(mean.clone(), covariance.clone())

    def project(self) -> GaussianState:
        """Project the current estimate into the measurement space.

        It returns the expected distribution of the next measure z ~ N(H mu, S) with:

            S = H P Hᵀ + R

        The precision S^{-1} is precomputed, so that the result can be directly used to gate
        a measure with `GaussianState.mahalanobis` before calling `update`. Nothing is mutated.

        Returns:
            GaussianState: Projected state in the measurement space (with its precision).
                Shape (mean): ``(dim_z, 1)``
                Shape (covariance): ``(dim_z, dim_z)``

        Raises:
            SingularMatrixError: If S is not invertible (degenerate H and R).
        """
        mean = self._measurement_matrix @ self._mean
        covariance = self._measurement_matrix @ self._covariance @ self._measurement_matrix.mT + self._measurement_noise

        # Explicit inverse rather than a Cholesky solve: dim_z is usually small
        precision, info = torch.linalg.inv_ex(covariance)
        if info.item() != 0 or not torch.isfinite(precision).all():
            raise SingularMatrixError("innovation covariance S must be invertible (check H and R)")

        return GaussianState(mean, covariance, precision)

    def update(self, measure) -> Correction:
        """Correct the estimate with a new measure z.

        1. Computing the measure expected distribution z ~ N(H mu, S) with `project`.
        2. Kalman gain computation: K = P Hᵀ S^{-1}
        3. Incorporate z information in the estimate:
            mu <- mu + K (z - H mu)
            P  <- P - K H P   OR [JOSEPH_UPDATE] P <- (I - K H) P (I - K H)ᵀ + K R Kᵀ

        Args:
            measure (array-like): Measure z.
                Shape: ``(dim_z,)`` or ``(dim_z, 1)``

        Returns:
            Correction: Residual, posterior estimate and covariance, Kalman gain and innovation covariance.

        Raises:
            ShapeError, InvalidInputError: If the measure is invalid.
            SingularMatrixError: If the innovation covariance S cannot be inverted.
            In all cases, the estimate is left unchanged.
        """
        measure = self._as_vector(measure, "z", self.measure_dim)
        projection = self.project()

        residual = measure - projection.mean
        kalman_gain = self._covariance @ self._measurement_matrix.mT @ projection.precision

        mean = self._mean + kalman_gain @ residual

        if self.joseph_update:
            identity = torch.eye(self.state_dim, dtype=self.dtype, device=self.device)
            factor = identity - kalman_gain @ self._measurement_matrix
            covariance = factor @ self._covariance @ factor.mT + kalman_gain @ self._measurement_noise @ kalman_gain.mT
        else:
            covariance = self._covariance - kalman_gain @ self._measurement_matrix @ self._covariance

        self._mean = mean
        self._covariance = covariance

        return Correction(residual, mean.clone(), covariance.clone(), kalman_gain, projection.covariance)

    def filter(self, measures, *, update_first=True, return_all=False) -> GaussianState:
        """Run the classic predict/update loop over a sequence of measures.

        The registered model is used at every timestep. Measures containing NaN are considered
        missing: the update is skipped for that timestep (but not the prediction).

        Each timestep is committed as soon as it is computed: if a measure is rejected
        (e.g. it contains Inf), the filter holds the estimate of the last successful step.

        Args:
            measures (array-like): Sequence of measures over time.
                Shape: ``(T, dim_z)`` or ``(T, dim_z, 1)``
            update_first (bool): If True, skip the prediction step on the first timestep, such that the current
                estimate is the prior at t=0.
                Default: True
            return_all (bool): If True, return the posterior estimate at every timestep as a single
                `GaussianState` with a leading time dimension. Otherwise, only the last one is returned.
                Default: False

        Returns:
            GaussianState: Either the last posterior estimate, or all of them.
                Shape (mean): ``([T, ]dim_x, 1)``
                Shape (covariance): ``([T, ]dim_x, dim_x)``
        """
        measures = as_tensor(measures, "measures", dtype=self.dtype, device=self.device)
        if (
            measures.ndim not in (2, 3)
            or measures.shape[1] != self.measure_dim
            or measures.shape[2:] not in ((), (1,))
        ):
            raise ShapeError(f"measures must be a sequence of column vectors of length {self.measure_dim}")

        saver: GaussianState

        if return_all:
            saver = GaussianState(
                torch.empty((measures.shape[0], self.state_dim, 1), dtype=self.dtype, device=self.device),
                torch.empty(
                    (measures.shape[0], self.state_dim, self.state_dim), dtype=self.dtype, device=self.device
                ),
            )

        for t, measure in enumerate(measures):
            if t or not update_first:  # Do not predict on the first t
                self.predict()

            if torch.isnan(measure).any():
                logger.debug("Missing measure at timestep %d: update skipped", t)
            else:
                self.update(measure)

            if return_all:
                saver.mean[t] = self._mean
                saver.covariance[t] = self._covariance

        if return_all:
            return saver

        return self.state

    def _as_vector(self, value, name: str, length: int) -> torch.Tensor:
        vector = as_tensor(value, name, dtype=self.dtype, device=self.device)
        validate_vector(vector, name, length)
        return vector.reshape(length, 1).clone()

    def _as_matrix(self, value, name: str, shape: tuple[int, int]) -> torch.Tensor:
        matrix = as_tensor(value, name, dtype=self.dtype, device=self.device)
        validate_matrix(matrix, name, shape)
        return matrix.clone()

    def _as_covariance(self, value, name: str, shape: tuple[int, int]) -> torch.Tensor:
        matrix = as_tensor(value, name, dtype=self.dtype, device=self.device)
        validate_covariance(matrix, name, shape, check_psd=self.check_psd)
        return matrix.clone()

    def _side_by_side(
        self, title: str, left_name: str, left: torch.Tensor, right_name: str, right: torch.Tensor
    ) -> str:
        """Format two tensors on the same lines if they fit, otherwise one below the other."""
        with printoptions(profile="short", sci_mode=False, linewidth=80):
            left_lines = str(left).split("\n")
            right_lines = str(right).split("\n")

        left_header = f"{title}: {left_name} = "
        right_header = f"{right_name} = ".rjust(len(left_header))
        left_width = max(len(line) for line in left_lines)
        right_width = max(len(line) for line in right_lines)

        if left_width + right_width <= self._REPR_SPLIT_LENGTH and len(left_lines) == len(right_lines):
            separator = f"  &  {right_name} = "
            return "\n".join(
                (left_header if i == 0 else " " * len(left_header))
                + left_line.ljust(left_width)
                + (separator if i == 0 else " " * len(separator))
                + right_line
                for i, (left_line, right_line) in enumerate(zip(left_lines, right_lines))
            )

        lines = [(left_header if i == 0 else " " * len(left_header)) + line for i, line in enumerate(left_lines)]
        lines.append("")
        lines += [(right_header if i == 0 else " " * len(right_header)) + line for i, line in enumerate(right_lines)]
        return "\n".join(lines)

    def __repr__(self) -> str:
        """Convert the Kalman filter (estimate and model) into a readable string."""
        header = (
            f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim},"
            f" Covariance update: {self.covariance_update})"
        )
        estimate = self._side_by_side("Estimate", "x", self._mean, "P", self._covariance)
        process = self._side_by_side("Process", "F", self._process_matrix, "Q", self._process_noise)
        measurement = self._side_by_side(
            "Measurement", "H", self._measurement_matrix, "R", self._measurement_noise
        )

        n_char = max(len(line) for line in "\n".join([header, estimate, process, measurement]).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, estimate, process, measurement])


def _is_positive_int(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool) and value > 0
