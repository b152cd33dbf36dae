#!/usr/bin/env python3
"""
Magnetostatics on the scalar potential u (H = -grad u):
- Linear solves: Lagrange-augmented pure-Neumann system, Dirichlet free-node system
- Field recovery per element, magnetization, volume-weighted nodal sums
- Demagnetizing field of a given magnetization (u = 0 on the bounding shell)
- Analytic reference for a sphere in a uniform field
"""
from __future__ import annotations
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from scipy.sparse.csgraph import connected_components

from geom import element_coefficients
from mesh import TetMesh, OUTER_SHELL_TAG, validate_mesh
from fem import boundary_integral, lagrange, stiffness_matrix
from amg_pcg import solve_amg_pcg


class SingularMatrixError(np.linalg.LinAlgError):
    """The (augmented) global system has no unique solution."""


# -------------------- Linear solves --------------------
def _node_graph(A: sp.spmatrix) -> sp.csr_matrix:
    """Adjacency of stored entries (explicit zeros count as couplings)."""
    A = sp.csr_matrix(A)
    return sp.csr_matrix((np.ones(A.nnz), A.indices, A.indptr), shape=A.shape)


def _direct_solve(mat: sp.spmatrix, rhs: np.ndarray) -> np.ndarray:
    try:
        lu = spla.splu(sp.csc_matrix(mat))
    except RuntimeError as exc:
        raise SingularMatrixError(f"sparse LU failed: {exc}") from exc
    x = lu.solve(rhs)
    if not np.all(np.isfinite(x)):
        raise SingularMatrixError("sparse LU produced a non-finite solution")
    return x


def augment_with_lagrange(A: sp.spmatrix, C: np.ndarray) -> sp.csr_matrix:
    """[[A, C], [C^T, 0]] as an (N+1, N+1) sparse matrix."""
    C = sp.csr_matrix(np.asarray(C, dtype=np.float64).reshape(-1, 1))
    return sp.bmat([[sp.csr_matrix(A), C], [C.T, None]], format="csr")


def solve_scalar_potential(A: sp.spmatrix, C: np.ndarray, RHS: np.ndarray) -> np.ndarray:
    """
    Solve [A C; C^T 0] [u; lam] = [-RHS; 0] and return u (lam is discarded).

    The single constraint C.u = 0 removes the constant mode of one connected
    mesh; a mesh with several components stays singular.
    """
    N = A.shape[0]
    RHS = np.asarray(RHS, dtype=np.float64).reshape(-1)
    if RHS.shape[0] != N or np.asarray(C).size != N:
        raise ValueError(f"RHS and Lagrange vector must have length {N}")
    ncomp, _ = connected_components(_node_graph(A), directed=False)
    if ncomp > 1:
        raise SingularMatrixError(
            f"mesh has {ncomp} disconnected components; one Lagrange constraint pins only one"
        )
    mat = augment_with_lagrange(A, C)
    x = _direct_solve(mat, np.concatenate([-RHS, [0.0]]))
    return x[:N]


def boundary_nodes(mesh: TetMesh, shell_id: Iterable[int] = (OUTER_SHELL_TAG,)) -> np.ndarray:
    """Unique nodes of the surface triangles whose tag is in shell_id."""
    sel = np.isin(mesh.surface_tag, np.asarray(list(shell_id)))
    return np.unique(mesh.surface_tri[sel]).astype(np.int64)


def free_nodes(nv: int, fixed: np.ndarray) -> np.ndarray:
    return np.setdiff1d(np.arange(nv, dtype=np.int64), np.asarray(fixed, dtype=np.int64))


def solve_dirichlet(
    A: sp.spmatrix,
    rhs: np.ndarray,
    free: np.ndarray,
    *,
    method: str = "direct",
    tol: float = 1e-10,
    maxiter: int = 500,
) -> np.ndarray:
    """
    u[free] = A[free,free]^-1 rhs[free], u = 0 on the remaining (fixed) nodes.

    method : {"direct", "amg"}
        Sparse LU, or CG preconditioned with an AMG V-cycle (PyAMG).
    """
    A = sp.csr_matrix(A)
    N = A.shape[0]
    rhs = np.asarray(rhs, dtype=np.float64).reshape(-1)
    free = np.asarray(free, dtype=np.int64)
    fixed = free_nodes(N, free)

    ncomp, labels = connected_components(_node_graph(A), directed=False)
    pinned = np.zeros(ncomp, dtype=bool)
    pinned[labels[fixed]] = True
    if not np.all(pinned):
        raise SingularMatrixError(
            f"{int(np.sum(~pinned))} mesh component(s) contain no fixed node"
        )

    A_ff = A[free][:, free]
    u = np.zeros(N, dtype=np.float64)
    if method == "direct":
        u[free] = _direct_solve(A_ff, rhs[free])
    elif method == "amg":
        u[free] = solve_amg_pcg(A_ff, rhs[free], tol=tol, maxiter=maxiter)
    else:
        raise ValueError("method must be 'direct' or 'amg'")
    return u


# -------------------- Field recovery --------------------
def _element_gradient(mesh: TetMesh, elements: np.ndarray, u: np.ndarray) -> np.ndarray:
    nds = mesh.conn[elements]                           # (Ek,4)
    coef = element_coefficients(mesh.knt, nds)          # (Ek,4,4), column i = (a,b,c,d) of node i
    return np.einsum("eci,ei->ec", coef[:, 1:, :], u[nds])


def magnetic_field(mesh: TetMesh, u: np.ndarray) -> np.ndarray:
    """Element field H = -grad u, shape (E,3)."""
    validate_mesh(mesh)
    u = np.asarray(u, dtype=np.float64).reshape(-1)
    return -_element_gradient(mesh, np.arange(mesh.nt), u)


def field_magnitude(H: np.ndarray) -> np.ndarray:
    return np.linalg.norm(H, axis=1)


def magnetization(mesh: TetMesh, H: np.ndarray, mu: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    M = chi * H on the inside elements, chi = mu - 1.
    Returns (M (Ei,3), chi*|H| (Ei,)).
    """
    ins = mesh.inside_elements
    chi = np.asarray(mu, dtype=np.float64)[ins] - 1.0
    M = chi[:, None] * H[ins]
    return M, chi * field_magnitude(H[ins])


def nodal_volume_sum(mesh: TetMesh, H_inside: np.ndarray) -> np.ndarray:
    """
    Accumulate VE[k] * H[k] into the four nodes of every inside element and
    return the rows of the inside nodes, shape (Ni,3).

    This is a volume-weighted sum, not an average: values scale with the
    volume of the incident elements.
    """
    validate_mesh(mesh)
    ins = mesh.inside_elements
    H_inside = np.asarray(H_inside, dtype=np.float64).reshape(-1, 3)
    if H_inside.shape[0] != ins.shape[0]:
        raise ValueError("H_inside must have one row per inside element")
    Hd = np.zeros((mesh.nv, 3), dtype=np.float64)
    weighted = mesh.volume[ins][:, None] * H_inside            # (Ei,3)
    np.add.at(Hd, mesh.conn[ins], np.repeat(weighted[:, None, :], 4, axis=1))
    return Hd[mesh.inside_nodes]


@dataclass
class FieldResult:
    H: np.ndarray          # (E,3) element field
    H_norm: np.ndarray     # (E,)
    M: np.ndarray          # (Ei,3) magnetization on inside elements
    M_norm: np.ndarray     # (Ei,)
    H_nodes: np.ndarray    # (Ni,3) volume-weighted nodal sum on inside nodes


def recover_fields(mesh: TetMesh, u: np.ndarray, mu: Optional[np.ndarray] = None) -> FieldResult:
    if mu is None:
        mu = np.ones(mesh.nt, dtype=np.float64)
    H = magnetic_field(mesh, u)
    M, M_norm = magnetization(mesh, H, mu)
    return FieldResult(
        H=H,
        H_norm=field_magnitude(H),
        M=M,
        M_norm=M_norm,
        H_nodes=nodal_volume_sum(mesh, H[mesh.inside_elements]),
    )


# -------------------- Demagnetizing field --------------------
@dataclass
class DemagResult:
    u: np.ndarray          # (N,) scalar potential, 0 on fixed nodes
    H_elements: np.ndarray # (Ei,3) demag field on inside elements
    H_nodes: np.ndarray    # (Ni,3) volume-weighted nodal sum on inside nodes


def demag_field(
    mesh: TetMesh,
    A: sp.spmatrix,
    m: np.ndarray,
    fixed: np.ndarray,
    *,
    method: str = "direct",
) -> DemagResult:
    """
    Demagnetizing field of the nodal magnetization m (N,3) with u = 0 on the
    fixed nodes (typically the bounding shell).

    Load: RHS[nd_i] += VE[k] * grad(phi_i) . mean(m[nds]) over the inside elements.
    A is the stiffness matrix with unit coefficient.
    """
    validate_mesh(mesh)
    m = np.asarray(m, dtype=np.float64)
    if m.shape != (mesh.nv, 3):
        raise ValueError(f"m must have shape ({mesh.nv}, 3)")
    ins = mesh.inside_elements
    nds = mesh.conn[ins]
    grads = element_coefficients(mesh.knt, nds)[:, 1:, :]       # (Ei,3,4)

    m_avg = m[nds].mean(axis=1)                                 # (Ei,3)
    contrib = mesh.volume[ins][:, None] * np.einsum("eci,ec->ei", grads, m_avg)
    RHS = np.zeros(mesh.nv, dtype=np.float64)
    np.add.at(RHS, nds, contrib)

    u = solve_dirichlet(A, RHS, free_nodes(mesh.nv, fixed), method=method)
    Hde = -np.einsum("eci,ei->ec", grads, u[nds])
    return DemagResult(u=u, H_elements=Hde, H_nodes=nodal_volume_sum(mesh, Hde))


# -------------------- Applied-field problem --------------------
def scalar_potential_for_applied_field(
    mesh: TetMesh,
    H_ext,
    mu: Optional[np.ndarray] = None,
    *,
    shell_id: Iterable[int] = (OUTER_SHELL_TAG,),
    backend: str = "numpy",
    verbose: bool = False,
) -> np.ndarray:
    """
    Potential of a body with permeability mu in the uniform applied field H_ext,
    with dot(H_ext, n) prescribed on the bounding shell (pure Neumann +
    Lagrange multiplier).
    """
    t0 = time.perf_counter()
    RHS = boundary_integral(mesh, H_ext, shell_id)
    C = lagrange(mesh)
    A = stiffness_matrix(mesh, mu, backend=backend)
    t1 = time.perf_counter()
    u = solve_scalar_potential(A, C, RHS)
    t2 = time.perf_counter()
    if verbose:
        print(
            f"[info] assembly ({backend}): {t1 - t0:.3f}s, nnz={A.nnz}; solve: {t2 - t1:.3f}s",
            flush=True,
        )
    return u


# -------------------- Analytic reference --------------------
def element_centroids(mesh: TetMesh) -> np.ndarray:
    return mesh.knt[mesh.conn].mean(axis=1)


def sphere_demag_ratio(chi) -> np.ndarray:
    """|M| / |H_ext| for a sphere of susceptibility chi in a uniform field."""
    chi = np.asarray(chi, dtype=np.float64)
    return 3.0 * chi / (3.0 + chi)


def relative_error_vs_sphere(mesh: TetMesh, M_norm: np.ndarray, mu: np.ndarray, H_ext) -> float:
    """Volume-weighted mean of 100*|M - M_analytic|/|M_analytic| over the inside elements (%)."""
    ins = mesh.inside_elements
    chi = np.asarray(mu, dtype=np.float64)[ins] - 1.0
    S = sphere_demag_ratio(chi) * np.linalg.norm(np.asarray(H_ext, dtype=np.float64))
    if np.any(S == 0.0):
        raise ValueError("analytic magnetization is zero (mu_r == 1 or H_ext == 0); relative error is undefined")
    ve = mesh.volume[ins]
    return float(np.sum(100.0 * np.abs(S - M_norm) / np.abs(S) * ve) / np.sum(ve))
