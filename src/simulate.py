#!/usr/bin/env python3
"""
Magnetic sphere in a uniform applied field (Steps 1-5).

    python src/simulate.py --p2 examples/sphere/sphere.p2 --out sphere --verbose

Step 1: mesh a sphere inside a bounding shell (grid or meshpy backend)
Step 2: boundary flux, Lagrange vector, stiffness matrix
Step 3: solve for the magnetic scalar potential
Step 4: recover H, |H|, M and the nodal volume-weighted field
Step 5: compare |M| with the analytic 3*chi/(3+chi)*|H_ext|; optional .vtu

Parameters come from an INI-style .p2 file:

    [mesh]
    backend = grid          ; grid | meshpy
    radius = 1.0
    outer_radius = 5.0
    size = 0.2
    size_outer = 1.0
    [field]
    hx = 1.0
    hy = 0.0
    hz = 0.0
    [material]
    mu_r = 3.0
    [solver]
    stiffness = numpy       ; numpy | jax
    shell_id = 1
"""
from __future__ import annotations
import argparse
import configparser
import re
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from mesh import (
    TetMesh,
    OUTER_SHELL_TAG,
    mesh_grid_sphere_in_box,
    mesh_backend_meshpy_sphere_in_sphere,
)
from magnetostatics import (
    FieldResult,
    recover_fields,
    relative_error_vs_sphere,
    scalar_potential_for_applied_field,
    sphere_demag_ratio,
)


# ------------------------------- Dataclasses ---------------------------------
@dataclass
class MeshParams:
    backend: str = "grid"
    radius: float = 1.0
    outer_radius: float = 5.0
    size: float = 0.2
    size_outer: float = 1.0


@dataclass
class SolverParams:
    stiffness: str = "numpy"
    shell_id: List[int] = field(default_factory=lambda: [OUTER_SHELL_TAG])


@dataclass
class P2Config:
    path: Optional[str]
    mesh: MeshParams
    H_ext: Tuple[float, float, float]
    mu_r: float
    solver: SolverParams


@dataclass
class Report:
    nodes: int
    elements: int
    inside_elements: int
    inside_nodes: int
    M_mean: float
    M_analytic: float
    error_percent: float


# ---------------------------------- Utils ------------------------------------
_FLOAT_RX = re.compile(
    r"""
    [-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?
""",
    re.VERBOSE,
)

_INT_RX = re.compile(r"[-+]?\d+")


def _getfloat_relaxed(cfg, section, option, default=None):
    if not (cfg.has_section(section) and cfg.has_option(section, option)):
        return default
    try:
        return cfg.getfloat(section, option)
    except ValueError:
        raw = cfg.get(section, option, fallback="")
        m = _FLOAT_RX.search(raw)
        return float(m.group(0)) if m else default


def _getints_relaxed(cfg, section, option, default=None):
    """Comma/space separated integers; non-numeric noise is ignored."""
    if not (cfg.has_section(section) and cfg.has_option(section, option)):
        return default
    vals = [int(s) for s in _INT_RX.findall(cfg.get(section, option, fallback=""))]
    return vals or default


def _getstr(cfg, section, option, default):
    if not (cfg.has_section(section) and cfg.has_option(section, option)):
        return default
    return cfg.get(section, option).strip() or default


def read_p2(path: Optional[str]) -> P2Config:
    """Read a .p2 file; missing file/sections/options fall back to defaults."""
    cfg = configparser.ConfigParser(inline_comment_prefixes=(";", "#"))
    if path is not None:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f".p2 not found: {path}")
        with p.open("r") as f:
            cfg.read_file(f)

    d = MeshParams()
    mesh = MeshParams(
        backend=_getstr(cfg, "mesh", "backend", d.backend),
        radius=float(_getfloat_relaxed(cfg, "mesh", "radius", d.radius)),
        outer_radius=float(_getfloat_relaxed(cfg, "mesh", "outer_radius", d.outer_radius)),
        size=float(_getfloat_relaxed(cfg, "mesh", "size", d.size)),
        size_outer=float(_getfloat_relaxed(cfg, "mesh", "size_outer", d.size_outer)),
    )
    H_ext = (
        float(_getfloat_relaxed(cfg, "field", "hx", 1.0)),
        float(_getfloat_relaxed(cfg, "field", "hy", 0.0)),
        float(_getfloat_relaxed(cfg, "field", "hz", 0.0)),
    )
    mu_r = float(_getfloat_relaxed(cfg, "material", "mu_r", 3.0))
    solver = SolverParams(
        stiffness=_getstr(cfg, "solver", "stiffness", "numpy"),
        shell_id=_getints_relaxed(cfg, "solver", "shell_id", [OUTER_SHELL_TAG]),
    )

    if not (0.0 < mesh.radius < mesh.outer_radius):
        raise ValueError("[mesh] needs 0 < radius < outer_radius")
    if mesh.backend not in ("grid", "meshpy"):
        raise ValueError("[mesh] backend must be 'grid' or 'meshpy'")
    if mu_r <= 0.0:
        raise ValueError("[material] mu_r must be positive")
    if mu_r == 1.0:
        raise ValueError("[material] mu_r = 1 gives a non-magnetic body; nothing to compare")
    if not any(H_ext):
        raise ValueError("[field] applied field must be non-zero")
    return P2Config(path=path, mesh=mesh, H_ext=H_ext, mu_r=mu_r, solver=solver)


# ----------------------------- Steps 1-5 -------------------------------------
def step1_mesh(params: MeshParams, *, verbose: bool = False) -> TetMesh:
    if params.backend == "meshpy":
        mesh = mesh_backend_meshpy_sphere_in_sphere(
            params.radius, params.outer_radius, params.size, params.size_outer, verbose=verbose
        )
    else:
        n_outer = max(1, int(np.ceil((params.outer_radius - 1.2 * params.radius) / params.size_outer)))
        mesh = mesh_grid_sphere_in_box(
            params.radius, params.outer_radius, params.size, n_outer, verbose=verbose
        )
    if verbose:
        print(
            f"[info] nodes={mesh.nv}, elements={mesh.nt}, inside elements={mesh.n_inside}, "
            f"inside nodes={mesh.inside_nodes.shape[0]}, surface triangles={mesh.ne}",
            flush=True,
        )
    return mesh


def step2_material(mesh: TetMesh, mu_r: float) -> np.ndarray:
    mu = np.ones(mesh.nt, dtype=np.float64)
    mu[mesh.inside_elements] = float(mu_r)
    return mu


def step3_solve(mesh: TetMesh, cfg: P2Config, mu: np.ndarray, *, verbose: bool = False) -> np.ndarray:
    return scalar_potential_for_applied_field(
        mesh,
        cfg.H_ext,
        mu,
        shell_id=cfg.solver.shell_id,
        backend=cfg.solver.stiffness,
        verbose=verbose,
    )


def step5_report(mesh: TetMesh, fields: FieldResult, mu: np.ndarray, H_ext) -> Report:
    ins = mesh.inside_elements
    ve = mesh.volume[ins]
    chi = float(np.mean(mu[ins]) - 1.0)
    return Report(
        nodes=mesh.nv,
        elements=mesh.nt,
        inside_elements=mesh.n_inside,
        inside_nodes=int(mesh.inside_nodes.shape[0]),
        M_mean=float(np.sum(fields.M_norm * ve) / np.sum(ve)),
        M_analytic=float(sphere_demag_ratio(chi) * np.linalg.norm(H_ext)),
        error_percent=relative_error_vs_sphere(mesh, fields.M_norm, mu, H_ext),
    )


def write_vtu_HM(*, basename: str, mesh: TetMesh, fields: FieldResult) -> str:
    try:
        import meshio
    except ImportError as exc:
        raise RuntimeError("meshio required: pip install meshio") from exc

    M_full = np.zeros((mesh.nt, 3), dtype=np.float64)
    M_full[mesh.inside_elements] = fields.M
    cells = [("tetra", np.asarray(mesh.conn, dtype=np.int32))]
    cell_data = {
        "mat_id": [np.asarray(mesh.mat_id, dtype=np.int32)],
        "H": [np.asarray(fields.H, dtype=np.float64)],
        "H_norm": [np.asarray(fields.H_norm, dtype=np.float64)],
        "M": [M_full],
    }
    out = meshio.Mesh(points=np.asarray(mesh.knt, dtype=np.float64), cells=cells, cell_data=cell_data)
    out_path = f"{basename}.vtu"
    out.write(out_path)
    return out_path


def run(cfg: P2Config, *, out: Optional[str] = None, verbose: bool = False) -> Report:
    t0 = time.perf_counter()
    mesh = step1_mesh(cfg.mesh, verbose=verbose)
    mu = step2_material(mesh, cfg.mu_r)
    u = step3_solve(mesh, cfg, mu, verbose=verbose)
    fields = recover_fields(mesh, u, mu)
    report = step5_report(mesh, fields, mu, cfg.H_ext)
    if out:
        path = write_vtu_HM(basename=out, mesh=mesh, fields=fields)
        print(f"[ok] Wrote visualization: {path}", flush=True)
    if verbose:
        print(f"[info] total time {time.perf_counter() - t0:.3f}s", flush=True)
    return report


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(
        description="Magnetic sphere in a uniform field: FEM scalar potential vs. analytic result."
    )
    ap.add_argument("--p2", default=None, help="INI-style parameter file (.p2)")
    ap.add_argument("--backend", choices=["grid", "meshpy"], default=None, help="overwrite [mesh] backend")
    ap.add_argument("--size", type=float, default=None, help="overwrite [mesh] size")
    ap.add_argument("--mu-r", type=float, default=None, help="overwrite [material] mu_r")
    ap.add_argument("--stiffness", choices=["numpy", "jax"], default=None, help="overwrite [solver] stiffness")
    ap.add_argument("--out", default=None, help="basename for the .vtu output")
    ap.add_argument("--verbose", action="store_true")
    args = ap.parse_args(argv)

    try:
        cfg = read_p2(args.p2)
    except (OSError, ValueError, configparser.Error) as e:
        print(f"[error] {e}", file=sys.stderr)
        return 2
    if args.backend is not None:
        cfg.mesh.backend = args.backend
    if args.size is not None:
        cfg.mesh.size = float(args.size)
    if args.mu_r is not None:
        cfg.mu_r = float(args.mu_r)
    if args.stiffness is not None:
        cfg.solver.stiffness = args.stiffness

    try:
        report = run(cfg, out=args.out, verbose=args.verbose)
    except (RuntimeError, ValueError, np.linalg.LinAlgError, IndexError) as e:
        print(f"[error] {e}", file=sys.stderr)
        return 2

    print(f"Number of elements {report.elements}")
    print(f"Number of Inside elements {report.inside_elements}")
    print(f"Number of nodes {report.nodes}")
    print(f"Number of Inside nodes {report.inside_nodes}")
    print(f"<|M|> = {report.M_mean:.6g}, analytic = {report.M_analytic:.6g}")
    print(f"100*|M - M_analytic|/M_analytic = {report.error_percent:.3f} %")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
