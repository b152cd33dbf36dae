import numpy as np
import pytest

from fem import (
    JaxLocalStiffness,
    NumpyLocalStiffness,
    area_triangle,
    assemble_global,
    boundary_integral,
    get_local_stiffness,
    lagrange,
    local_stiffness_matrix,
    stiffness_matrix,
)
from geom import DegenerateElementError
from mesh import OUTER_SHELL_TAG, OutOfRangeIndexError, mesh_from_knt_ijk

# closed form: V * G G^T with V = 1/6, gradients (-1,-1,-1), e_x, e_y, e_z
UNIT_TET_K = np.array(
    [
        [3.0, -1.0, -1.0, -1.0],
        [-1.0, 1.0, 0.0, 0.0],
        [-1.0, 0.0, 1.0, 0.0],
        [-1.0, 0.0, 0.0, 1.0],
    ]
) / 6.0


@pytest.mark.parametrize("backend", ["numpy", "jax"])
def test_unit_tet_local_stiffness(unit_tet, backend):
    Ak = local_stiffness_matrix(unit_tet, backend=backend)
    assert Ak.shape == (1, 4, 4)
    np.testing.assert_allclose(Ak[0], UNIT_TET_K, atol=1e-14)


def test_coefficient_scales_local_stiffness(unit_tet):
    Ak = local_stiffness_matrix(unit_tet, np.array([2.5]))
    np.testing.assert_allclose(Ak[0], 2.5 * UNIT_TET_K, atol=1e-14)


def test_backends_agree(cube2):
    f = np.random.default_rng(1).uniform(0.5, 3.0, cube2.nt)
    a = NumpyLocalStiffness().compute(cube2, f)
    b = JaxLocalStiffness().compute(cube2, f)
    np.testing.assert_allclose(a, b, rtol=1e-12, atol=1e-14)


@pytest.mark.parametrize("backend", ["numpy", "jax"])
def test_backend_writes_into_caller_buffer(cube2, backend):
    out = np.full((cube2.nt, 4, 4), np.nan)
    res = get_local_stiffness(backend).compute(cube2, None, out=out)
    assert res is out
    assert np.all(np.isfinite(out))


def test_bad_buffer_and_coefficients_are_rejected(cube2):
    with pytest.raises(ValueError):
        NumpyLocalStiffness().compute(cube2, None, out=np.zeros((3, 4, 4)))
    with pytest.raises(ValueError):
        local_stiffness_matrix(cube2, np.ones(cube2.nt + 1))
    with pytest.raises(ValueError, match="unknown local stiffness backend"):
        get_local_stiffness("fortran")


@pytest.mark.parametrize("backend", ["numpy", "jax"])
def test_degenerate_element_is_reported(backend):
    flat = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0]], dtype=float)
    mesh = mesh_from_knt_ijk(flat, np.array([[0, 1, 2, 3]]), detect_one_based=False)
    with pytest.raises(DegenerateElementError):
        stiffness_matrix(mesh, backend=backend)


def test_global_matrix_is_symmetric_with_zero_row_sums(cube4):
    f = np.random.default_rng(2).uniform(1.0, 4.0, cube4.nt)
    A = stiffness_matrix(cube4, f).toarray()
    assert A.shape == (cube4.nv, cube4.nv)
    np.testing.assert_allclose(A, A.T, atol=1e-14)
    np.testing.assert_allclose(A.sum(axis=1), 0.0, atol=1e-13)
    assert np.all(np.diag(A) > 0)


def test_linear_field_patch_test(cube2):
    # interior rows of A annihilate any linear potential
    A = stiffness_matrix(cube2)
    u = 0.3 + cube2.knt @ np.array([1.0, -2.0, 0.5])
    interior = np.flatnonzero(np.all((cube2.knt > 0) & (cube2.knt < 1), axis=1))
    assert interior.size == 1
    np.testing.assert_allclose((A @ u)[interior], 0.0, atol=1e-13)


def test_shared_face_contributions_accumulate(two_tets):
    Ak = local_stiffness_matrix(two_tets)
    A = stiffness_matrix(two_tets).toarray()

    expected = np.zeros((two_tets.nv, two_tets.nv))
    for k in range(two_tets.nt):
        nds = two_tets.conn[k]
        expected[np.ix_(nds, nds)] += Ak[k]
    np.testing.assert_allclose(A, expected, atol=1e-14)

    # node 1 is local node 1 in element 0 and local node 0 in element 1
    n0, n1 = list(two_tets.conn[0]), list(two_tets.conn[1])
    assert A[1, 1] == pytest.approx(Ak[0][n0.index(1), n0.index(1)] + Ak[1][n1.index(1), n1.index(1)])
    # nodes 0 and 4 share no element
    assert A[0, 4] == 0.0


def test_assemble_global_sums_duplicates():
    conn = np.array([[0, 1, 2, 3], [0, 1, 2, 3]])
    Ak = np.stack([np.eye(4), 2.0 * np.eye(4)])
    A = assemble_global(4, conn, Ak).toarray()
    np.testing.assert_allclose(A, 3.0 * np.eye(4))


def test_lagrange_sums_to_total_volume(cube4, two_tets):
    for mesh in (cube4, two_tets):
        C = lagrange(mesh)
        assert C.shape == (mesh.nv,)
        assert np.sum(C) == pytest.approx(np.sum(mesh.volume))


def test_lagrange_unit_tet(unit_tet):
    np.testing.assert_allclose(lagrange(unit_tet), np.full(4, 1.0 / 24.0))


def test_area_triangle():
    assert area_triangle(np.zeros(3), np.array([1.0, 0, 0]), np.array([0, 1.0, 0])) == pytest.approx(0.5)
    assert area_triangle(np.zeros(3), np.array([2.0, 0, 0]), np.array([0, 0, 3.0])) == pytest.approx(3.0)


def test_boundary_flux_on_unit_cube(cube4):
    F = np.array([1.0, 0.0, 0.0])
    RHS = boundary_integral(cube4, F, [OUTER_SHELL_TAG])
    x = cube4.knt[:, 0]
    assert np.sum(RHS) == pytest.approx(0.0, abs=1e-12)
    assert np.sum(RHS[np.isclose(x, 1.0)]) == pytest.approx(1.0)
    assert np.sum(RHS[np.isclose(x, 0.0)]) == pytest.approx(-1.0)
    inner = ~(np.isclose(x, 0.0) | np.isclose(x, 1.0))
    np.testing.assert_allclose(RHS[inner], 0.0, atol=1e-14)


def test_empty_admissible_set_gives_zero_rhs(cube2, capsys):
    RHS = boundary_integral(cube2, [1.0, 2.0, 3.0], [42])
    assert RHS.shape == (cube2.nv,)
    assert not np.any(RHS)
    assert "[warn]" in capsys.readouterr().err


def test_scalar_shell_id_is_accepted(cube4):
    F = np.array([0.0, 1.0, 0.0])
    np.testing.assert_allclose(
        boundary_integral(cube4, F, OUTER_SHELL_TAG),
        boundary_integral(cube4, F, [OUTER_SHELL_TAG]),
    )


@pytest.mark.parametrize("backend", ["numpy", "jax"])
def test_hand_built_mesh_with_negative_node_fails_fast(two_tets, backend):
    bad = two_tets._replace(conn=np.array([[0, 1, 2, 3], [1, 2, 3, -1]]))
    with pytest.raises(OutOfRangeIndexError):
        lagrange(bad)
    with pytest.raises(OutOfRangeIndexError):
        stiffness_matrix(bad, backend=backend)


def test_negative_surface_node_fails_fast(two_tets):
    tri = two_tets.surface_tri.copy()
    tri[0, 0] = -1
    with pytest.raises(OutOfRangeIndexError):
        boundary_integral(two_tets._replace(surface_tri=tri), [1.0, 0.0, 0.0], OUTER_SHELL_TAG)
