from jax import config
config.update("jax_enable_x64", True)
from typing import Tuple
import numpy as np
import jax
import jax.numpy as jnp


class DegenerateElementError(np.linalg.LinAlgError):
    """A tetrahedron with (near-)zero volume; the basis solve is singular."""


def _coeff_matrix(verts):
    """B = [[1, x1, y1, z1], ..., [1, x4, y4, z4]] (shape 4x4)."""
    ones = np.ones((4, 1), dtype=np.float64)
    return np.concatenate([ones, np.asarray(verts, dtype=np.float64)], axis=1)


def abcd(knt: np.ndarray, nodes, nd: int) -> Tuple[float, float, float, float]:
    """
    Coefficients of the linear basis function f = a + b*x + c*y + d*z that is
    1 at node `nd` and 0 at the other three nodes of the element.

    Parameters
    ----------
    knt : (N,3) float64
        Node coordinates.
    nodes : sequence of 4 int
        Global node ids of the tetrahedron.
    nd : int
        Global id of the node the basis function belongs to (one of `nodes`).
    """
    nodes = [int(n) for n in nodes]
    nd = int(nd)
    if nd not in nodes:
        raise ValueError(f"node {nd} is not a vertex of element {nodes}")
    order = [nd] + [n for n in nodes if n != nd]
    M = _coeff_matrix(knt[order])
    try:
        r = np.linalg.solve(M, np.array([1.0, 0.0, 0.0, 0.0]))
    except np.linalg.LinAlgError as exc:
        raise DegenerateElementError(f"singular basis system for element {nodes}") from exc
    return float(r[0]), float(r[1]), float(r[2]), float(r[3])


def element_coefficients(knt: np.ndarray, conn: np.ndarray) -> np.ndarray:
    """
    Batched basis coefficients for all elements.

    Solves B_e X_e = I for every element, so column i of X_e holds
    (a_i, b_i, c_i, d_i) of local node i. Same dense solve as `abcd`,
    with the four unit right-hand sides at once.

    Returns
    -------
    coef : (E,4,4) float64
    """
    verts = np.asarray(knt, dtype=np.float64)[np.asarray(conn)]   # (E,4,3)
    E = verts.shape[0]
    B = np.concatenate([np.ones((E, 4, 1)), verts], axis=2)        # (E,4,4)
    rhs = np.broadcast_to(np.eye(4), (E, 4, 4))
    try:
        return np.linalg.solve(B, rhs)
    except np.linalg.LinAlgError as exc:
        raise DegenerateElementError("singular basis system in element batch") from exc


def element_gradients(knt: np.ndarray, conn: np.ndarray) -> np.ndarray:
    """(E,4,3): rows are (b_i, c_i, d_i), the constant gradient of basis i."""
    coef = element_coefficients(knt, conn)
    return np.transpose(coef[:, 1:, :], (0, 2, 1))


def signed_volumes(knt: np.ndarray, conn: np.ndarray) -> np.ndarray:
    """Signed tet volumes det(B)/6 via the scalar triple product."""
    t = np.asarray(conn)
    a, b, c, d = knt[t[:, 0]], knt[t[:, 1]], knt[t[:, 2]], knt[t[:, 3]]
    return np.einsum("ij,ij->i", np.cross(b - a, c - a), d - a) / 6.0


def check_nondegenerate(knt: np.ndarray, conn: np.ndarray, rtol: float = 1e-12) -> None:
    """
    Raise DegenerateElementError if |6V| <= rtol * L^3 for any element,
    where L is the element's longest edge.
    """
    t = np.asarray(conn)
    if t.shape[0] == 0:
        return
    verts = knt[t]                                                   # (E,4,3)
    pairs = np.array([[0, 1], [0, 2], [0, 3], [1, 2], [1, 3], [2, 3]])
    edges = verts[:, pairs[:, 1], :] - verts[:, pairs[:, 0], :]     # (E,6,3)
    L = np.max(np.linalg.norm(edges, axis=2), axis=1)
    vol6 = np.abs(6.0 * signed_volumes(knt, t))
    bad = np.flatnonzero(vol6 <= rtol * L ** 3)
    if bad.size:
        shown = ", ".join(str(int(k)) for k in bad[:10])
        more = "" if bad.size <= 10 else f" (+{bad.size - 10} more)"
        raise DegenerateElementError(f"degenerate elements: {shown}{more}")


# ------------------------------- JAX kernels -------------------------------
def _tet_grads_from_verts(verts):
    """
    Per-element basis gradients from vertex coords (4,3):
    grads (4,3) with rows (b_i, c_i, d_i).
    """
    ones = jnp.ones((4, 1), dtype=verts.dtype)
    B = jnp.concatenate([ones, verts], axis=1)       # (4,4)
    X = jnp.linalg.solve(B, jnp.eye(4, dtype=verts.dtype))  # columns are [a_i,b_i,c_i,d_i]
    return X[1:, :].T


def _element_stiffness(verts, Ve, f):
    G = _tet_grads_from_verts(verts)                 # (4,3)
    return Ve * f * (G @ G.T)                        # b b^T + c c^T + d d^T


element_stiffness_batch = jax.jit(jax.vmap(_element_stiffness, in_axes=(0, 0, 0)))
