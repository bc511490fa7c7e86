import numpy as np
import pytest
import torch

from torch_lkf.errors import CovarianceError, InvalidInputError, KalmanFilterError, ShapeError
from torch_lkf.validation import as_tensor, check_finite, validate_covariance, validate_matrix, validate_vector


def test_as_tensor_converts_sequences_and_arrays():
    from_list = as_tensor([[1, 2], [3, 4]], "F", dtype=torch.float64, device=torch.device("cpu"))
    from_numpy = as_tensor(np.eye(2), "F", dtype=torch.float32, device=torch.device("cpu"))

    assert from_list.dtype == torch.float64
    assert torch.equal(from_list, torch.tensor([[1.0, 2.0], [3.0, 4.0]]))
    assert from_numpy.dtype == torch.float32
    assert torch.equal(from_numpy, torch.eye(2, dtype=torch.float32))


def test_as_tensor_rejects_ragged_input():
    with pytest.raises(InvalidInputError, match="F must be convertible to a numeric tensor"):
        as_tensor([[1.0, 2.0], [3.0]], "F", dtype=torch.float64, device=torch.device("cpu"))


@pytest.mark.parametrize("value", [float("nan"), float("inf"), -float("inf")])
def test_check_finite(value: float):
    tensor = torch.zeros(3, 3)
    check_finite(tensor, "P")  # No error

    tensor[1, 2] = value
    with pytest.raises(InvalidInputError, match="P must not contain NaN or Inf"):
        check_finite(tensor, "P")


def test_validate_vector_accepts_flat_and_column_vectors():
    validate_vector(torch.zeros(3), "x", 3)
    validate_vector(torch.zeros(3, 1), "x", 3)


@pytest.mark.parametrize("shape", [(2,), (4,), (3, 2), (1, 3), (3, 1, 1), ()])
def test_validate_vector_rejects_wrong_shapes(shape: tuple[int, ...]):
    with pytest.raises(ShapeError, match="x must be a column vector of length 3"):
        validate_vector(torch.zeros(shape), "x", 3)


def test_validate_vector_checks_shape_before_finiteness():
    with pytest.raises(ShapeError):
        validate_vector(torch.full((2,), torch.nan), "z", 3)

    with pytest.raises(InvalidInputError, match="z must not contain NaN or Inf"):
        validate_vector(torch.full((3,), torch.nan), "z", 3)


def test_validate_matrix():
    validate_matrix(torch.zeros(2, 3), "H", (2, 3))

    with pytest.raises(ShapeError, match="H must be a 2x3 matrix"):
        validate_matrix(torch.zeros(3, 2), "H", (2, 3))

    with pytest.raises(ShapeError, match="F must be a 3x3 matrix"):
        validate_matrix(torch.zeros(3), "F", (3, 3))

    with pytest.raises(InvalidInputError, match="H must not contain NaN or Inf"):
        validate_matrix(torch.tensor([[0.0, torch.inf, 0.0], [0.0, 0.0, 0.0]]), "H", (2, 3))


def test_validate_covariance_diagonal():
    validate_covariance(torch.zeros(2, 2), "Q", (2, 2))  # Zero variance is fine
    validate_covariance(torch.tensor([[1.0, 5.0], [-3.0, 2.0]]), "Q", (2, 2))  # Off-diagonal is not checked

    with pytest.raises(CovarianceError, match="main diagonal of Q must be greater than or equal to zero"):
        validate_covariance(torch.tensor([[1.0, 0.0], [0.0, -1e-3]]), "Q", (2, 2))

    with pytest.raises(ShapeError, match="R must be a 2x2 matrix"):
        validate_covariance(torch.eye(3), "R", (2, 2))


def test_validate_covariance_psd():
    spd = torch.tensor([[2.0, 1.0], [1.0, 2.0]])
    validate_covariance(spd, "P", (2, 2), check_psd=True)
    validate_covariance(torch.zeros(2, 2), "P", (2, 2), check_psd=True)
    validate_covariance(torch.tensor([[1.0, 1.0], [1.0, 1.0]]), "P", (2, 2), check_psd=True)  # Singular but PSD

    # Non negative diagonal, but eigenvalues are 3 and -1
    indefinite = torch.tensor([[1.0, 2.0], [2.0, 1.0]])
    validate_covariance(indefinite, "P", (2, 2))  # Accepted by the default check
    with pytest.raises(CovarianceError, match="P must be symmetric positive semi-definite"):
        validate_covariance(indefinite, "P", (2, 2), check_psd=True)

    asymmetric = torch.tensor([[2.0, 1.0], [0.0, 2.0]])
    with pytest.raises(CovarianceError, match="P must be symmetric positive semi-definite"):
        validate_covariance(asymmetric, "P", (2, 2), check_psd=True)


def test_validators_do_not_mutate_input():
    tensor = torch.tensor([[1.0, 0.5], [0.5, 1.0]])
    copy = tensor.clone()

    validate_covariance(tensor, "P", (2, 2), check_psd=True)

    assert torch.equal(tensor, copy)


def test_errors_hierarchy():
    assert issubclass(ShapeError, KalmanFilterError)
    assert issubclass(ShapeError, ValueError)
    assert issubclass(InvalidInputError, ValueError)
    assert issubclass(CovarianceError, ValueError)
