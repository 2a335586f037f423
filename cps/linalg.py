"""Moore-Penrose pseudoinverse engine.

This module implements three interchangeable ways of computing the
pseudoinverse of a dense matrix: the normal-equations form (inverted through
a column-pivoted QR decomposition), the thin SVD form and the full SVD form.
The light source matrix of a photometric stereo run is inverted with one of
them to solve the Lambertian least-squares system.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import numpy as np
from scipy import linalg

from cps.errors import SingularMatrixError

logger = logging.getLogger(__name__)

PINV_SVD_FULL = 0
PINV_NORMAL_EQUATIONS = 1
PINV_SVD_THIN = 2

PINV_MODES = {
    "svd_full": PINV_SVD_FULL,
    "normal": PINV_NORMAL_EQUATIONS,
    "svd_thin": PINV_SVD_THIN,
}

# Singular values at or below this are treated as zero in single precision.
SVD_TOLERANCE_FLOAT32 = 1e-6

PinvMode = Union[int, str]


def working_dtype(A: np.ndarray) -> np.dtype:
    """Return the floating dtype computations on ``A`` should run in."""
    if np.issubdtype(A.dtype, np.floating):
        return A.dtype
    return np.dtype(np.float64)


def svd_tolerance(dtype: np.dtype) -> float:
    """Singular value cut-off for the given floating precision.

    The single precision value is fixed at 1e-6; other precisions scale it by
    the ratio of their machine epsilon to float32's.

    Args:
        dtype: Floating point dtype of the matrix being inverted

    Returns:
        Tolerance below which singular values are discarded
    """
    eps = np.finfo(dtype).eps
    return float(SVD_TOLERANCE_FLOAT32 * eps / np.finfo(np.float32).eps)


def resolve_pinv_mode(mode: PinvMode) -> int:
    """Map a pseudoinverse mode index or name to its index.

    Args:
        mode: 0/"svd_full", 1/"normal" or 2/"svd_thin"

    Returns:
        Integer mode index

    Raises:
        ValueError: If the mode is not one of the known algorithms
    """
    if isinstance(mode, str):
        key = mode.strip().lower()
        if key in PINV_MODES:
            return PINV_MODES[key]
    elif isinstance(mode, (int, np.integer)) and not isinstance(mode, bool):
        if int(mode) in PINV_MODES.values():
            return int(mode)
    raise ValueError(
        f"Unknown pseudoinverse mode: {mode!r} "
        f"(expected one of {sorted(PINV_MODES.values())} or {sorted(PINV_MODES)})"
    )


def _as_matrix(A: np.ndarray) -> np.ndarray:
    A = np.asarray(A)
    if A.ndim != 2:
        raise ValueError(f"Expected a 2D matrix, got shape {A.shape}")
    if A.size == 0:
        raise ValueError(f"Cannot invert an empty matrix of shape {A.shape}")
    return A.astype(working_dtype(A), copy=False)


def _inverse_pivoted_qr(G: np.ndarray) -> np.ndarray:
    """Invert a square matrix through a column-pivoted QR decomposition.

    With G[:, piv] = Q @ R, the inverse is P @ R^-1 @ Q^T, i.e. the rows of
    R^-1 @ Q^T scattered back to the pivot order. Pivoting sorts the
    diagonal of R by magnitude, so the last entry decides singularity.

    Raises:
        SingularMatrixError: If G is numerically rank deficient
    """
    Q, R, piv = linalg.qr(G, pivoting=True)
    diag = np.abs(np.diag(R))
    tol = np.finfo(G.dtype).eps * G.shape[0] * diag[0]
    if diag[-1] <= tol:
        raise SingularMatrixError(
            f"Gram matrix of shape {G.shape} is rank deficient "
            f"(numerical rank {int(np.sum(diag > tol))}); "
            f"the normal equations need a full rank matrix, use an SVD mode for coplanar lights"
        )

    try:
        X = linalg.solve_triangular(R, Q.T)
    except np.linalg.LinAlgError as e:
        raise SingularMatrixError(f"Gram matrix of shape {G.shape} is singular: {e}") from None

    G_inv = np.empty_like(X)
    G_inv[piv] = X
    return G_inv


def pinv_normal_equations(A: np.ndarray) -> np.ndarray:
    """Compute the pseudoinverse from the normal equations.

    Square matrices are inverted directly. Otherwise the smaller Gram matrix
    is inverted:

        m > n: A+ = (A^T A)^-1 A^T
        m < n: A+ = A^T (A A^T)^-1

    A rank deficient (Gram) matrix cannot be inverted this way and raises
    ``SingularMatrixError``, which is also a ``numpy.linalg.LinAlgError``.

    Args:
        A: m x n matrix

    Returns:
        n x m pseudoinverse

    Raises:
        SingularMatrixError: If the matrix to invert is singular
    """
    A = _as_matrix(A)
    m, n = A.shape

    if m == n:
        try:
            return linalg.inv(A).astype(A.dtype, copy=False)
        except np.linalg.LinAlgError as e:
            raise SingularMatrixError(f"Matrix of shape {A.shape} is singular: {e}") from None

    At = A.T
    if m > n:
        A_inv = _inverse_pivoted_qr(At @ A) @ At
    else:
        A_inv = At @ _inverse_pivoted_qr(A @ At)

    return A_inv.astype(A.dtype, copy=False)


def inverse_sigma(
    singular_values: np.ndarray,
    shape: Tuple[int, int],
    tol: float
) -> np.ndarray:
    """Build the pseudoinverse of the singular value matrix.

    Args:
        singular_values: Singular values in descending order
        shape: Shape of the result, (columns of V, columns of U)
        tol: Singular values at or below this are treated as zero

    Returns:
        Rectangular diagonal matrix holding 1/s for every s > tol
    """
    S_inv = np.zeros(shape, dtype=singular_values.dtype)
    for i, s in enumerate(singular_values):
        if s > tol:
            S_inv[i, i] = 1.0 / s
    return S_inv


def _pinv_svd(A: np.ndarray, full_matrices: bool, tol: Optional[float]) -> np.ndarray:
    A = _as_matrix(A)
    if tol is None:
        tol = svd_tolerance(A.dtype)

    U, s, Vt = np.linalg.svd(A, full_matrices=full_matrices)
    S_inv = inverse_sigma(s, (Vt.shape[0], U.shape[1]), tol)

    return (Vt.T @ S_inv @ U.T).astype(A.dtype, copy=False)


def pinv_svd_thin(A: np.ndarray, tol: Optional[float] = None) -> np.ndarray:
    """Compute the pseudoinverse from the economy-size SVD.

    Args:
        A: m x n matrix
        tol: Singular value cut-off (defaults to ``svd_tolerance(A.dtype)``)

    Returns:
        n x m pseudoinverse
    """
    return _pinv_svd(A, full_matrices=False, tol=tol)


def pinv_svd_full(A: np.ndarray, tol: Optional[float] = None) -> np.ndarray:
    """Compute the pseudoinverse from the full SVD.

    Args:
        A: m x n matrix
        tol: Singular value cut-off (defaults to ``svd_tolerance(A.dtype)``)

    Returns:
        n x m pseudoinverse
    """
    return _pinv_svd(A, full_matrices=True, tol=tol)


def numerical_rank(A: np.ndarray, tol: Optional[float] = None) -> int:
    """Count the singular values of ``A`` above the SVD cut-off."""
    A = _as_matrix(A)
    if tol is None:
        tol = svd_tolerance(A.dtype)
    s = np.linalg.svd(A, compute_uv=False)
    return int(np.sum(s > tol))


def condition_number(A: np.ndarray, tol: Optional[float] = None) -> float:
    """Ratio of the largest to the smallest singular value (inf if rank deficient)."""
    A = _as_matrix(A)
    if tol is None:
        tol = svd_tolerance(A.dtype)
    s = np.linalg.svd(A, compute_uv=False)
    if s[-1] <= tol:
        return float("inf")
    return float(s[0] / s[-1])


def pinv(
    A: np.ndarray,
    mode: PinvMode = PINV_SVD_FULL,
    tol: Optional[float] = None
) -> np.ndarray:
    """Compute the Moore-Penrose pseudoinverse of a matrix.

    Args:
        A: m x n matrix
        mode: Algorithm, 0/"svd_full" (default), 1/"normal" or 2/"svd_thin"
        tol: Singular value cut-off for the SVD algorithms

    Returns:
        n x m pseudoinverse A+ with A @ A+ @ A ~= A

    Raises:
        ValueError: If ``mode`` is unknown or ``A`` is not a non-empty matrix
    """
    index = resolve_pinv_mode(mode)

    if index == PINV_NORMAL_EQUATIONS:
        A_inv = pinv_normal_equations(A)
    elif index == PINV_SVD_THIN:
        A_inv = pinv_svd_thin(A, tol)
    else:
        A_inv = pinv_svd_full(A, tol)

    if logger.isEnabledFor(logging.DEBUG):
        s = np.linalg.svd(_as_matrix(A), compute_uv=False)
        logger.debug(
            f"Pseudoinverse ({index}): shape={A_inv.shape}, "
            f"rank={numerical_rank(A, tol)}, "
            f"singular values={np.array2string(s, precision=4)}"
        )

    return A_inv
