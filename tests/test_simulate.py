import numpy as np
import pytest

import simulate
from simulate import MeshParams, read_p2, run, step1_mesh


def test_defaults_without_file():
    cfg = read_p2(None)
    assert cfg.path is None
    assert cfg.mesh == MeshParams()
    assert cfg.H_ext == (1.0, 0.0, 0.0)
    assert cfg.mu_r == 3.0
    assert cfg.solver.stiffness == "numpy"
    assert cfg.solver.shell_id == [1]


def test_relaxed_parsing(tmp_path):
    p2 = tmp_path / "case.p2"
    p2.write_text(
        "[mesh]\n"
        "backend = grid ; staircase sphere\n"
        "radius = 0.5 m\n"
        "size = 0.1\n"
        "[field]\n"
        "hx = 0\n"
        "hz = 2.5e3 A/m\n"
        "[material]\n"
        "mu_r = 11\n"
        "[solver]\n"
        "stiffness = jax\n"
        "shell_id = 1, 3\n"
    )
    cfg = read_p2(str(p2))
    assert cfg.mesh.backend == "grid"
    assert cfg.mesh.radius == 0.5
    assert cfg.mesh.size == 0.1
    assert cfg.mesh.outer_radius == MeshParams().outer_radius
    assert cfg.H_ext == (0.0, 0.0, 2500.0)
    assert cfg.mu_r == 11.0
    assert cfg.solver.stiffness == "jax"
    assert cfg.solver.shell_id == [1, 3]


def test_invalid_parameters(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_p2(str(tmp_path / "missing.p2"))
    p2 = tmp_path / "bad.p2"
    p2.write_text("[mesh]\nradius = 6\nouter_radius = 5\n")
    with pytest.raises(ValueError):
        read_p2(str(p2))
    p2.write_text("[mesh]\nbackend = gmsh\n")
    with pytest.raises(ValueError):
        read_p2(str(p2))


def test_grid_mesh_step(capsys):
    mesh = step1_mesh(MeshParams(radius=1.0, outer_radius=4.0, size=0.4, size_outer=1.5), verbose=True)
    assert mesh.n_inside > 0
    assert "[info]" in capsys.readouterr().out


def test_coarse_run_reports_sensible_error():
    cfg = read_p2(None)
    cfg.mesh.size = 0.4
    cfg.solver.stiffness = "jax"
    report = run(cfg)
    assert report.inside_elements > 0
    assert report.M_analytic == pytest.approx(3.0 * 2.0 / 5.0)
    assert np.isfinite(report.error_percent)
    assert report.M_mean == pytest.approx(report.M_analytic, rel=0.15)


def test_main_reports_missing_file(tmp_path, capsys):
    rc = simulate.main(["--p2", str(tmp_path / "nope.p2")])
    assert rc == 2
    assert "[error]" in capsys.readouterr().err


def test_main_runs_coarse_case(capsys):
    rc = simulate.main(["--size", "0.5", "--mu-r", "2.0", "--stiffness", "jax"])
    assert rc == 0
    out = capsys.readouterr().out
    assert "100*|M - M_analytic|/M_analytic" in out


def test_non_magnetic_body_is_rejected(tmp_path, capsys):
    p2 = tmp_path / "air.p2"
    p2.write_text("[material]\nmu_r = 1\n")
    with pytest.raises(ValueError):
        read_p2(str(p2))
    p2.write_text("[field]\nhx = 0\n")
    with pytest.raises(ValueError):
        read_p2(str(p2))
    rc = simulate.main(["--size", "0.5", "--mu-r", "1.0"])
    assert rc == 2
    assert "[error]" in capsys.readouterr().err
