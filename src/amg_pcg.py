# amg_pcg.py — AMG-preconditioned CG for the SPD free-node system

import hashlib
from typing import Any, Dict

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla


__all__ = ["get_or_build_amg_hierarchy", "solve_amg_pcg"]

# -------------------- AMG hierarchy cache --------------------
_MG_CACHE: Dict[str, Any] = {}


def _matrix_cache_key(A: sp.csr_matrix, amg: str) -> str:
    h = hashlib.sha1()
    h.update(np.ascontiguousarray(A.indptr).tobytes())
    h.update(np.ascontiguousarray(A.indices).tobytes())
    h.update(np.ascontiguousarray(A.data).tobytes())
    return f"amg={amg}\nn={A.shape[0]}\nnnz={A.nnz}\n{h.hexdigest()}"


def get_or_build_amg_hierarchy(A: sp.csr_matrix, amg: str = "sa"):
    """
    Cached PyAMG hierarchy for the symmetric matrix A.
    'sa' = smoothed aggregation, 'rs' = Ruge-Stuben.
    """
    try:
        import pyamg
    except ImportError as exc:
        raise RuntimeError("pyamg is required for the AMG solver (pip install pyamg)") from exc

    A = sp.csr_matrix(A)
    key = _matrix_cache_key(A, amg)
    if key in _MG_CACHE:
        return _MG_CACHE[key]

    if amg == "sa":
        ml = pyamg.smoothed_aggregation_solver(A, symmetry="symmetric")
    elif amg == "rs":
        ml = pyamg.ruge_stuben_solver(A)
    else:
        raise ValueError("amg must be 'sa' or 'rs'")
    _MG_CACHE[key] = ml
    return ml


def solve_amg_pcg(
    A: sp.csr_matrix,
    b: np.ndarray,
    *,
    amg: str = "sa",
    tol: float = 1e-10,
    maxiter: int = 500,
) -> np.ndarray:
    """
    Solve A x = b for SPD A with CG preconditioned by one AMG V-cycle.

    Raises RuntimeError if CG does not reach the relative tolerance.
    """
    A = sp.csr_matrix(A)
    ml = get_or_build_amg_hierarchy(A, amg=amg)
    M = ml.aspreconditioner(cycle="V")
    x, info = spla.cg(A, np.asarray(b, dtype=np.float64), rtol=tol, atol=0.0, maxiter=maxiter, M=M)
    if info > 0:
        raise RuntimeError(f"AMG-PCG did not converge within {maxiter} iterations (rtol={tol:g})")
    if info < 0:
        raise ValueError("AMG-PCG received illegal input")
    return x
