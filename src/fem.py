"""
FEM assembly for the magnetic scalar potential on linear tetrahedra.

    abcd (geom.py)        -> linear basis function, f = a + bx + cy + dz
    local stiffness       -> Ak = VE[k]*f[k]*(b b^T + c c^T + d d^T), (E,4,4)
    stiffness_matrix      -> sparse global stiffness matrix (CSR)
    lagrange              -> volume integral of each basis function, used for
                             the Lagrange multiplier technique
    boundary_integral     -> surface integral of a vector field dot surface normal

Two interchangeable local-stiffness backends are provided: a reference NumPy
loop ("numpy") and a batched JAX kernel ("jax"). Both honour the same
contract and may write into a caller-supplied (E,4,4) buffer.
"""
from __future__ import annotations
import sys
from typing import Dict, Iterable, Optional, Protocol, Type, Union

import numpy as np
import jax.numpy as jnp
import scipy.sparse as sp

from geom import abcd, check_nondegenerate, element_stiffness_batch
from mesh import TetMesh, validate_mesh


def _material_vector(mesh: TetMesh, f: Optional[np.ndarray]) -> np.ndarray:
    if f is None:
        return np.ones(mesh.nt, dtype=np.float64)
    f = np.asarray(f, dtype=np.float64).reshape(-1)
    if f.shape[0] != mesh.nt:
        raise ValueError(f"material coefficient has {f.shape[0]} entries, mesh has {mesh.nt} elements")
    return f


def _output_buffer(out: Optional[np.ndarray], nt: int) -> np.ndarray:
    if out is None:
        return np.zeros((nt, 4, 4), dtype=np.float64)
    if out.shape != (nt, 4, 4) or out.dtype != np.float64:
        raise ValueError(f"output buffer must be float64 with shape ({nt}, 4, 4)")
    return out


# -------------------- Local stiffness backends --------------------
class LocalStiffness(Protocol):
    name: str

    def compute(
        self, mesh: TetMesh, f: Optional[np.ndarray] = None, out: Optional[np.ndarray] = None
    ) -> np.ndarray:
        ...


class NumpyLocalStiffness:
    """Reference implementation: four basis solves per element."""

    name = "numpy"

    def compute(self, mesh, f=None, out=None):
        validate_mesh(mesh)
        f = _material_vector(mesh, f)
        check_nondegenerate(mesh.knt, mesh.conn)
        Ak = _output_buffer(out, mesh.nt)
        b = np.zeros(4)
        c = np.zeros(4)
        d = np.zeros(4)
        for k in range(mesh.nt):
            nds = mesh.conn[k]
            for i in range(4):
                _, b[i], c[i], d[i] = abcd(mesh.knt, nds, nds[i])
            Ak[k] = mesh.volume[k] * f[k] * (np.outer(b, b) + np.outer(c, c) + np.outer(d, d))
        return Ak


class JaxLocalStiffness:
    """Batched implementation: one vmapped 4x4 solve with four unit right-hand sides per element."""

    name = "jax"

    def compute(self, mesh, f=None, out=None):
        validate_mesh(mesh)
        f = _material_vector(mesh, f)
        # a singular batch solve in JAX yields inf/nan instead of raising
        check_nondegenerate(mesh.knt, mesh.conn)
        verts = jnp.asarray(mesh.knt[mesh.conn], dtype=jnp.float64)
        Ak_dev = element_stiffness_batch(
            verts, jnp.asarray(mesh.volume, dtype=jnp.float64), jnp.asarray(f)
        )
        Ak = _output_buffer(out, mesh.nt)
        Ak[...] = np.asarray(Ak_dev)
        return Ak


_BACKENDS: Dict[str, Type] = {
    NumpyLocalStiffness.name: NumpyLocalStiffness,
    JaxLocalStiffness.name: JaxLocalStiffness,
}


def get_local_stiffness(name: str = "numpy") -> LocalStiffness:
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise ValueError(f"unknown local stiffness backend {name!r}; choose from {sorted(_BACKENDS)}") from None


def local_stiffness_matrix(mesh: TetMesh, f: Optional[np.ndarray] = None, *, backend: str = "numpy") -> np.ndarray:
    """Dense local stiffness matrices, shape (E,4,4)."""
    return get_local_stiffness(backend).compute(mesh, f)


# -------------------- Global assembly --------------------
def assemble_global(nv: int, conn: np.ndarray, Ak: np.ndarray) -> sp.csr_matrix:
    """
    Scatter local (E,4,4) blocks into an (nv,nv) sparse matrix. Entries that
    land on the same (row, col) are summed by the COO -> CSR conversion.
    """
    conn = np.asarray(conn, dtype=np.int64)
    rows = np.repeat(conn, 4, axis=1).reshape(-1)   # (E*16,)
    cols = np.tile(conn, (1, 4)).reshape(-1)        # (E*16,)
    data = np.asarray(Ak, dtype=np.float64).reshape(-1)
    return sp.coo_matrix((data, (rows, cols)), shape=(nv, nv)).tocsr()


def stiffness_matrix(mesh: TetMesh, f: Optional[np.ndarray] = None, *, backend: str = "numpy") -> sp.csr_matrix:
    """
    Sparse global stiffness matrix

        A_ij = sum_e f_e * V_e * (grad phi_i . grad phi_j)

    Parameters
    ----------
    mesh : TetMesh
    f : (E,) float64, optional
        Piecewise-constant coefficient (e.g. relative permeability); default ones.
    backend : {"numpy", "jax"}
        Local stiffness implementation.
    """
    Ak = local_stiffness_matrix(mesh, f, backend=backend)
    return assemble_global(mesh.nv, mesh.conn, Ak)


# -------------------- Lagrange multiplier technique --------------------
def lagrange(mesh: TetMesh) -> np.ndarray:
    """C[node] = sum of VE[k]/4 over the elements k incident to node."""
    validate_mesh(mesh)
    C = np.zeros(mesh.nv, dtype=np.float64)
    np.add.at(C, mesh.conn, np.repeat(mesh.volume[:, None] / 4.0, 4, axis=1))
    return C


# -------------------- Boundary condition --------------------
def area_triangle(p1: np.ndarray, p2: np.ndarray, p3: np.ndarray) -> np.ndarray:
    """Area of 3D triangles; accepts (3,) or (S,3) vertex arrays."""
    return 0.5 * np.linalg.norm(np.cross(np.asarray(p2) - p1, np.asarray(p3) - p1), axis=-1)


def boundary_integral(mesh: TetMesh, F, shell_id: Union[int, Iterable[int]]) -> np.ndarray:
    """
    Surface integral of the uniform field F dotted with the outward normal,
    lumped to the three nodes of every surface triangle whose tag is in shell_id.
    """
    F = np.asarray(F, dtype=np.float64).reshape(3)
    validate_mesh(mesh)
    shell_id = np.atleast_1d(np.asarray(shell_id))
    RHS = np.zeros(mesh.nv, dtype=np.float64)

    sel = np.isin(mesh.surface_tag, shell_id)
    if not np.any(sel):
        print(
            f"[warn] boundary_integral: no surface triangle has a tag in {shell_id.tolist()}; RHS is zero",
            file=sys.stderr,
        )
        return RHS

    nds = mesh.surface_tri[sel]
    p = mesh.knt
    areaT = area_triangle(p[nds[:, 0]], p[nds[:, 1]], p[nds[:, 2]])
    flux = (mesh.normal[sel] @ F) * areaT / 3.0
    np.add.at(RHS, nds, np.repeat(flux[:, None], 3, axis=1))
    return RHS
