import numpy as np
import pytest

from mesh import mesh_from_knt_ijk, mesh_backend_grid_axes, mesh_grid_sphere_in_box

UNIT_TET = np.array(
    [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
)


@pytest.fixture
def unit_tet():
    return mesh_from_knt_ijk(UNIT_TET, np.array([[0, 1, 2, 3]]), detect_one_based=False)


@pytest.fixture
def two_tets():
    """Two tets sharing the face (1,2,3)."""
    knt = np.vstack([UNIT_TET, [[1.0, 1.0, 1.0]]])
    ijk = np.array([[0, 1, 2, 3], [1, 2, 3, 4]])
    return mesh_from_knt_ijk(knt, ijk, detect_one_based=False)


def _cube(n):
    ax = np.linspace(0.0, 1.0, n + 1)
    knt, tets = mesh_backend_grid_axes(ax, ax, ax)
    return mesh_from_knt_ijk(knt, tets, detect_one_based=False)


@pytest.fixture
def cube2():
    """Unit cube, 2x2x2 bricks (27 nodes, one interior node)."""
    return _cube(2)


@pytest.fixture
def cube4():
    """Unit cube, 4x4x4 bricks (125 nodes, 27 interior nodes)."""
    return _cube(4)


@pytest.fixture(scope="session")
def sphere_mesh():
    """Staircase unit sphere in a graded box of half width 5."""
    return mesh_grid_sphere_in_box(radius=1.0, half_width=5.0, h=0.2, n_outer=4)
