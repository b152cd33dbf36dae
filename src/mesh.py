"""
Tetrahedral mesh container and mesh backends.

- TetMesh: immutable mesh value consumed read-only by the FEM pipeline
  (nodes, tets, volumes, boundary triangles with shell tags and outward
  normals, body element/node subsets).
- mesh_from_knt_ijk: build a TetMesh from in-memory (knt, ijk) arrays.
- Backends:
  * grid: brick grid on arbitrary axes, each brick split into 6 tets (Freudenthal).
  * meshpy (TetGen): sphere body inside a spherical bounding shell.

Dependencies:
- For the meshpy backend: meshpy (TetGen) -> pip install meshpy
- The grid backend works with NumPy only.
"""
from __future__ import annotations
from typing import NamedTuple, Optional, Sequence, Tuple, Dict
import numpy as np

from geom import signed_volumes

# Optional: TetGen backend
try:
    from meshpy.tet import MeshInfo, Options, build as tet_build

    HAVE_meshpy = True
except ImportError:
    HAVE_meshpy = False


OUTER_SHELL_TAG = 1
INTERFACE_TAG = 2

# local faces of a tet and the vertex opposite to each
_FACES = np.array([[1, 2, 3], [0, 2, 3], [0, 1, 3], [0, 1, 2]], dtype=np.int64)
_OPPOSITE = np.array([0, 1, 2, 3], dtype=np.int64)


class OutOfRangeIndexError(IndexError):
    """A tet or surface triangle references a node id outside [0, N)."""


class TetMesh(NamedTuple):
    knt: np.ndarray              # (N,3) float64
    conn: np.ndarray             # (E,4) int64
    volume: np.ndarray           # (E,) float64, positive
    mat_id: np.ndarray           # (E,) int32
    surface_tri: np.ndarray      # (S,3) int64
    surface_tag: np.ndarray      # (S,) int32
    normal: np.ndarray           # (S,3) float64, outward unit normals
    inside_elements: np.ndarray  # (Ei,) int64
    inside_nodes: np.ndarray     # (Ni,) int64

    @property
    def nv(self) -> int:
        return int(self.knt.shape[0])

    @property
    def nt(self) -> int:
        return int(self.conn.shape[0])

    @property
    def ne(self) -> int:
        return int(self.surface_tri.shape[0])

    @property
    def n_inside(self) -> int:
        return int(self.inside_elements.shape[0])


def _check_range(name: str, idx: np.ndarray, upper: int) -> None:
    idx = np.asarray(idx)
    if idx.size == 0:
        return
    bad = (idx < 0) | (idx >= upper)
    if np.any(bad):
        first = np.argwhere(bad)[0]
        raise OutOfRangeIndexError(
            f"{name} references index {int(idx[tuple(first)])} at {tuple(int(i) for i in first)}; "
            f"valid range is [0, {upper})"
        )


def validate_mesh(mesh: TetMesh) -> TetMesh:
    """Check referential integrity of all index arrays; returns the mesh unchanged."""
    nv, nt = mesh.nv, mesh.nt
    _check_range("conn", mesh.conn, nv)
    _check_range("surface_tri", mesh.surface_tri, nv)
    _check_range("inside_elements", mesh.inside_elements, nt)
    _check_range("inside_nodes", mesh.inside_nodes, nv)
    if mesh.volume.shape[0] != nt:
        raise ValueError(f"volume has {mesh.volume.shape[0]} entries, expected {nt}")
    if mesh.normal.shape[0] != mesh.ne or mesh.surface_tag.shape[0] != mesh.ne:
        raise ValueError("normal/surface_tag must have one entry per surface triangle")
    return mesh


def orient_tets_positive(knt: np.ndarray, tets: np.ndarray) -> np.ndarray:
    """Swap the last two vertices where needed to ensure positive volume."""
    if tets.size == 0:
        return tets
    t = tets.copy()
    bad = signed_volumes(knt, t) < 0.0
    if np.any(bad):
        t[np.ix_(bad, [2, 3])] = t[np.ix_(bad, [3, 2])]
    return t


def _oriented_normals(knt, tri, opp):
    """Unit normals of triangles `tri` pointing away from vertex `opp`; flips tri to match."""
    p0, p1, p2 = knt[tri[:, 0]], knt[tri[:, 1]], knt[tri[:, 2]]
    n = np.cross(p1 - p0, p2 - p0)
    inward = np.einsum("ij,ij->i", n, knt[opp] - p0) > 0.0
    n[inward] *= -1.0
    tri = tri.copy()
    tri[np.ix_(inward, [1, 2])] = tri[np.ix_(inward, [2, 1])]
    n /= np.linalg.norm(n, axis=1, keepdims=True)
    return tri, n


def extract_surface(
    knt: np.ndarray, conn: np.ndarray, inside_mask: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Boundary triangles of the tet mesh.

    Faces used by a single tet form the outer shell (OUTER_SHELL_TAG), normals
    point out of the mesh. Faces shared by a body tet and a non-body tet form
    the body interface (INTERFACE_TAG), normals point out of the body.

    Returns (tri (S,3), tag (S,), normal (S,3)).
    """
    E = conn.shape[0]
    faces = conn[:, _FACES].reshape(-1, 3)
    owner = np.repeat(np.arange(E), 4)
    opp = conn[:, _OPPOSITE].reshape(-1)

    keys = np.sort(faces, axis=1)
    _, inv, cnt = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inv = inv.reshape(-1)
    n_inside_owners = np.bincount(inv, weights=inside_mask[owner].astype(np.float64))

    outer = cnt[inv] == 1
    interface = (cnt[inv] == 2) & (n_inside_owners[inv] == 1) & inside_mask[owner]

    tri_o, n_o = _oriented_normals(knt, faces[outer], opp[outer])
    tri_i, n_i = _oriented_normals(knt, faces[interface], opp[interface])

    tri = np.vstack([tri_o, tri_i]).astype(np.int64)
    tag = np.concatenate([
        np.full(tri_o.shape[0], OUTER_SHELL_TAG, dtype=np.int32),
        np.full(tri_i.shape[0], INTERFACE_TAG, dtype=np.int32),
    ])
    normal = np.vstack([n_o, n_i])
    return tri, tag, normal


def mesh_from_knt_ijk(
    knt_in: np.ndarray,
    ijk_in: np.ndarray,
    *,
    inside_ids: Optional[Sequence[int]] = None,
    detect_one_based: Optional[bool] = None,
    fix_orientation: bool = True,
) -> TetMesh:
    """
    Validate in-memory (knt, ijk) arrays and build a TetMesh.

    Parameters
    ----------
    knt_in : array-like, shape (N,3)
        Node coordinates.
    ijk_in : array-like, shape (E,4) or (E,5)
        Connectivity [n1, n2, n3, n4(, mat_id)]. If (E,4), mat_id = 1.
        Node ids may be 0- or 1-based; auto-detected by default.
    inside_ids : sequence of int, optional
        Material ids forming the body. Default: every id but the largest
        (the air/bounding shell) when several ids are present, else all.
    detect_one_based : Optional[bool]
        Force the 1-based detection outcome; None to auto-detect.
    fix_orientation : bool
        Swap local nodes 3<->4 where the signed volume is negative.
    """
    knt = np.asarray(knt_in, dtype=np.float64)
    ijk = np.asarray(ijk_in)
    if knt.ndim != 2 or knt.shape[1] != 3:
        raise ValueError("knt must be (N,3).")
    if ijk.ndim != 2 or ijk.shape[1] not in (4, 5):
        raise ValueError("ijk must have 4 or 5 columns (n1,n2,n3,n4[,mat_id]).")

    conn = ijk[:, :4].astype(np.int64)
    if ijk.shape[1] == 5:
        mat_id = ijk[:, 4].astype(np.int32)
    else:
        mat_id = np.ones(conn.shape[0], dtype=np.int32)

    N = knt.shape[0]
    if detect_one_based is None:
        # One-based is a strong guess if min==1 and max==N (0-based would be max<=N-1).
        one_based = conn.size > 0 and int(conn.min()) == 1 and int(conn.max()) == N
    else:
        one_based = bool(detect_one_based)
    if one_based:
        conn = conn - 1
    _check_range("ijk", conn, N)

    if fix_orientation:
        conn = orient_tets_positive(knt, conn)
    volume = np.abs(signed_volumes(knt, conn))

    groups = np.unique(mat_id)
    if inside_ids is None:
        inside_ids = groups[groups != groups.max()] if groups.size > 1 else groups
    inside_mask = np.isin(mat_id, np.asarray(inside_ids))
    inside_elements = np.flatnonzero(inside_mask).astype(np.int64)
    inside_nodes = np.unique(conn[inside_elements]).astype(np.int64)

    tri, tag, normal = extract_surface(knt, conn, inside_mask)

    return validate_mesh(TetMesh(
        knt=knt,
        conn=conn,
        volume=volume,
        mat_id=mat_id,
        surface_tri=tri,
        surface_tag=tag,
        normal=normal,
        inside_elements=inside_elements,
        inside_nodes=inside_nodes,
    ))


# ------------------------------- Backend: GRID -------------------------------
def mesh_backend_grid_axes(
    xs: np.ndarray, ys: np.ndarray, zs: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Brick grid on the given (strictly increasing) axes, each brick split into
    6 tets sharing the main diagonal. Returns (knt, tets) with 0-based ids.
    """
    xs, ys, zs = (np.asarray(a, dtype=np.float64) for a in (xs, ys, zs))
    nx, ny, nz = xs.size - 1, ys.size - 1, zs.size - 1
    if min(nx, ny, nz) < 1:
        raise ValueError("each axis needs at least two coordinates")

    Z, Y, X = np.meshgrid(zs, ys, xs, indexing="ij")
    knt = np.column_stack([X.ravel(), Y.ravel(), Z.ravel()])

    def nidx(i, j, k):
        return i + (nx + 1) * (j + (ny + 1) * k)

    k, j, i = np.meshgrid(np.arange(nz), np.arange(ny), np.arange(nx), indexing="ij")
    i, j, k = i.ravel(), j.ravel(), k.ravel()
    A = nidx(i, j, k)
    B = nidx(i + 1, j, k)
    C = nidx(i, j + 1, k)
    D = nidx(i + 1, j + 1, k)
    E = nidx(i, j, k + 1)
    F = nidx(i + 1, j, k + 1)
    G = nidx(i, j + 1, k + 1)
    H = nidx(i + 1, j + 1, k + 1)
    tets = np.stack(
        [
            np.stack([A, B, D, H], axis=1),
            np.stack([A, B, F, H], axis=1),
            np.stack([A, C, D, H], axis=1),
            np.stack([A, C, G, H], axis=1),
            np.stack([A, E, F, H], axis=1),
            np.stack([A, E, G, H], axis=1),
        ],
        axis=1,
    ).reshape(-1, 4)
    return knt, tets.astype(np.int64)


def graded_axis(inner: float, outer: float, h: float, n_outer: int) -> np.ndarray:
    """
    Axis with uniform spacing ~h on [-inner, inner] and n_outer geometrically
    growing cells on each side out to +-outer.
    """
    if not (0.0 < inner < outer):
        raise ValueError("need 0 < inner < outer")
    n_in = max(1, int(np.ceil(2.0 * inner / h)))
    core = np.linspace(-inner, inner, n_in + 1)
    if n_outer < 1:
        return core
    grow = np.geomspace(inner, outer, n_outer + 1)[1:]
    return np.concatenate([-grow[::-1], core, grow])


def mesh_grid_sphere_in_box(
    radius: float = 1.0,
    half_width: float = 5.0,
    h: float = 0.2,
    n_outer: int = 5,
    *,
    verbose: bool = False,
) -> TetMesh:
    """
    Staircase sphere (mat_id=1, tets with centroid inside `radius`) in a graded
    box of half width `half_width` (mat_id=2, air).
    """
    ax = graded_axis(1.2 * radius, half_width, h, n_outer)
    knt, tets = mesh_backend_grid_axes(ax, ax, ax)
    centroids = knt[tets].mean(axis=1)
    mat = np.where(np.linalg.norm(centroids, axis=1) < radius, 1, 2).astype(np.int32)
    ijk = np.hstack([tets, mat[:, None]])
    if verbose:
        print(
            f"[info:grid:sphere] axis cells={ax.size - 1}; nodes={knt.shape[0]}, tets={ijk.shape[0]}",
            flush=True,
        )
    return mesh_from_knt_ijk(knt, ijk, inside_ids=[1], detect_one_based=False)


# ------------------------------- Backend: MESHPY -------------------------------
def approx_max_volume_from_edge(h: float) -> float:
    # Practical heuristic for TetGen's max volume from target edge length ~h
    return 0.1 * (h**3)


def icosahedron() -> Tuple[np.ndarray, np.ndarray]:
    """Return (V,F) for a unit icosahedron centered at origin."""
    t = (1.0 + np.sqrt(5.0)) / 2.0
    verts = np.array(
        [
            (-1, t, 0), (1, t, 0), (-1, -t, 0), (1, -t, 0),
            (0, -1, t), (0, 1, t), (0, -1, -t), (0, 1, -t),
            (t, 0, -1), (t, 0, 1), (-t, 0, -1), (-t, 0, 1),
        ],
        dtype=float,
    )
    verts = verts / np.linalg.norm(verts, axis=1, keepdims=True)
    faces = np.array(
        [
            (0, 11, 5), (0, 5, 1), (0, 1, 7), (0, 7, 10), (0, 10, 11),
            (1, 5, 9), (5, 11, 4), (11, 10, 2), (10, 7, 6), (7, 1, 8),
            (3, 9, 4), (3, 4, 2), (3, 2, 6), (3, 6, 8), (3, 8, 9),
            (4, 9, 5), (2, 4, 11), (6, 2, 10), (8, 6, 7), (9, 8, 1),
        ],
        dtype=np.int32,
    )
    return verts, faces


def subdivide_icosphere(verts: np.ndarray, faces: np.ndarray, level: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """Split each triangle into 4 `level` times, projecting new verts back to the unit sphere."""
    V = [np.asarray(v, dtype=float) for v in verts]
    F = np.asarray(faces, dtype=np.int32)
    for _ in range(max(int(level), 0)):
        edge_cache: Dict[Tuple[int, int], int] = {}
        new_faces = []

        def mid_idx(i: int, j: int) -> int:
            key = (i, j) if i < j else (j, i)
            if key not in edge_cache:
                m = 0.5 * (V[i] + V[j])
                V.append(m / np.linalg.norm(m))
                edge_cache[key] = len(V) - 1
            return edge_cache[key]

        for i, j, k in F.tolist():
            a, b, c = mid_idx(i, j), mid_idx(j, k), mid_idx(k, i)
            new_faces.extend([(i, a, c), (a, j, b), (c, b, k), (a, b, c)])
        F = np.asarray(new_faces, dtype=np.int32)
    return np.asarray(V, dtype=np.float64), F


def auto_subdiv(radius: float, h: float, max_level: int = 6) -> int:
    """Smallest icosphere level whose edge length (~1.05 r / 2^level) is <= h."""
    level = 0
    while level < max_level and 1.05 * radius / (2 ** level) > h:
        level += 1
    return level


def mesh_backend_meshpy_sphere_in_sphere(
    radius: float = 1.0,
    outer_radius: float = 5.0,
    h: float = 0.2,
    h_outer: Optional[float] = None,
    *,
    minratio: float = 1.5,
    verbose: bool = False,
) -> TetMesh:
    """
    TetGen mesh of a sphere (mat_id=1) inside a spherical bounding shell
    (mat_id=2). The inner surface is preserved as the body interface.
    """
    if not HAVE_meshpy:
        raise RuntimeError("meshpy is not installed. Install with: pip install meshpy")
    if not (0.0 < radius < outer_radius):
        raise ValueError("need 0 < radius < outer_radius")
    if h_outer is None:
        h_outer = 0.25 * outer_radius

    V0, F0 = icosahedron()
    V_in, F_in = subdivide_icosphere(V0, F0, auto_subdiv(radius, h))
    V_out, F_out = subdivide_icosphere(V0, F0, auto_subdiv(outer_radius, h_outer))

    points = np.vstack([radius * V_in, outer_radius * V_out])
    facets = np.vstack([F_in, F_out + V_in.shape[0]])

    mi = MeshInfo()
    mi.set_points(points.tolist())
    mi.set_facets([list(tri) for tri in facets.tolist()])
    mi.regions.resize(2)
    mi.regions[0] = (0.0, 0.0, 0.0, 1.0, approx_max_volume_from_edge(float(h)))
    r_mid = 0.5 * (radius + outer_radius)
    mi.regions[1] = (r_mid, 0.0, 0.0, 2.0, approx_max_volume_from_edge(float(h_outer)))

    opts = Options("pqAaY")
    opts.minratio = float(minratio)
    opts.regionattrib = True
    opts.verbose = bool(verbose)

    out = tet_build(
        mi,
        options=opts,
        attributes=True,
        volume_constraints=True,
        verbose=bool(verbose),
    )
    knt = np.asarray(out.points, dtype=np.float64)
    tets = np.asarray(out.elements, dtype=np.int64)
    attrs = np.asarray(out.element_attributes, dtype=np.float64).reshape(-1)
    if attrs.shape[0] != tets.shape[0]:
        raise RuntimeError("TetGen returned no region attributes; cannot tell body from shell")
    mat = np.rint(attrs).astype(np.int32)
    ijk = np.hstack([tets, mat[:, None]])
    if verbose:
        print(
            f"[info:meshpy:sphere] nodes={knt.shape[0]}, tets={ijk.shape[0]}, body tets={int(np.sum(mat == 1))}",
            flush=True,
        )
    return mesh_from_knt_ijk(knt, ijk, inside_ids=[1], detect_one_based=False)
