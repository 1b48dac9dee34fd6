import dataclasses

import pytest
import torch

from eeqtorch.cn import GeometricNCoord, derf_count, dexp_count, erf_count, exp_count
from eeqtorch.params.loader import default_ncoord_params
from eeqtorch.structure import Structure


METHANOL = Structure.new(
    [6, 8, 1, 1, 1, 1],
    [
        [0.0, 0.0, 0.0],
        [2.69, 0.12, 0.0],
        [-0.68, 1.93, 0.05],
        [-0.71, -0.98, 1.66],
        [-0.69, -0.94, -1.68],
        [3.31, -1.58, 0.21],
    ],
)
LIF = Structure.new(
    [3, 9],
    [[0.1, 0.3, 0.2], [3.1, 3.6, 4.6]],
    lattice=[[7.6, 0.0, 0.0], [0.4, 7.7, 0.0], [0.0, 0.3, 7.9]],
)


def finite_diff_cn(engine, mol, h=1e-5):
    dcndr = torch.zeros(mol.nat, mol.nat, 3, dtype=torch.float64)
    for a in range(mol.nat):
        for k in range(3):
            pos_p = mol.positions.clone(); pos_p[a, k] += h
            pos_m = mol.positions.clone(); pos_m[a, k] -= h
            cp, _, _ = engine.get_cn(mol.with_positions(pos_p))
            cm, _, _ = engine.get_cn(mol.with_positions(pos_m))
            dcndr[:, a, k] = (cp - cm) / (2 * h)
    return dcndr


def finite_diff_cn_strain(engine, mol, h=1e-5):
    dcndL = torch.zeros(mol.nat, 3, 3, dtype=torch.float64)
    for x in range(3):
        for y in range(3):
            out = []
            for sign in (1.0, -1.0):
                deform = torch.eye(3, dtype=torch.float64)
                deform[x, y] += sign * h
                lat = None if mol.lattice is None else mol.lattice @ deform
                cn, _, _ = engine.get_cn(mol.with_positions(mol.positions @ deform, lat))
                out.append(cn)
            dcndL[:, x, y] = (out[0] - out[1]) / (2 * h)
    return dcndL


@pytest.mark.parametrize("fn,dfn", [(erf_count, derf_count), (exp_count, dexp_count)])
def test_counting_derivatives(fn, dfn):
    r = torch.linspace(1.0, 8.0, 15, dtype=torch.float64)
    r0 = torch.tensor(2.7, dtype=torch.float64)
    h = 1e-6
    ref = (fn(r + h, r0, 7.5) - fn(r - h, r0, 7.5)) / (2 * h)
    assert torch.allclose(dfn(r, r0, 7.5), ref, atol=1e-7)
    assert fn(r0, r0, 7.5).item() == pytest.approx(0.5)


@pytest.mark.parametrize("counting,mol", [("erf", METHANOL), ("exp", METHANOL), ("erf", LIF)])
def test_cn_derivatives_fd(counting, mol):
    engine = GeometricNCoord(dataclasses.replace(default_ncoord_params(), counting=counting))
    cn, dcndr, dcndL = engine.get_cn(mol, gradient=True)
    assert cn.shape == (mol.nat,)
    assert torch.allclose(dcndr, finite_diff_cn(engine, mol), atol=1e-7)
    assert torch.allclose(dcndL, finite_diff_cn_strain(engine, mol), atol=1e-7)


def test_cn_cap_bounds_and_isolated_atoms():
    engine = GeometricNCoord(default_ncoord_params())
    cn, _, _ = engine.get_cn(METHANOL)
    assert torch.all(cn < 8.0)
    assert 3.0 < cn[0].item() < 4.5
    single = Structure.new([6], [[0.0, 0.0, 0.0]])
    cn1, d1, dL1 = engine.get_cn(single, gradient=True)
    assert abs(cn1.item()) < 1e-12
    assert torch.all(d1 == 0.0) and torch.all(dL1 == 0.0)


def test_cn_without_cap_matches_raw_sum():
    params = dataclasses.replace(default_ncoord_params(), cn_max=None)
    engine = GeometricNCoord(params)
    mol = Structure.new([1, 1], [[0.0, 0.0, 0.0], [1.4, 0.0, 0.0]])
    cn, _, _ = engine.get_cn(mol)
    r0 = 2.0 * float(params.rcov[1])
    ref = float(erf_count(torch.tensor(1.4, dtype=torch.float64), torch.tensor(r0, dtype=torch.float64), 7.5))
    assert torch.allclose(cn, torch.full((2,), ref, dtype=torch.float64))


def test_cn_invalid_settings():
    with pytest.raises(ValueError):
        GeometricNCoord(dataclasses.replace(default_ncoord_params(), counting="gauss"))
    with pytest.raises(ValueError):
        GeometricNCoord(dataclasses.replace(default_ncoord_params(), cutoff=-1.0))


@pytest.mark.parametrize("n", [1, 2, 4])
def test_cn_invariant_to_lattice_shifts(n):
    engine = GeometricNCoord(default_ncoord_params())
    cn, dcndr, dcndL = engine.get_cn(LIF, gradient=True)
    pos = LIF.positions.clone()
    pos[1] += n * LIF.lattice[0] + LIF.lattice[1]
    cn_s, dcndr_s, dcndL_s = engine.get_cn(LIF.with_positions(pos), gradient=True)
    assert torch.allclose(cn_s, cn, atol=1e-12)
    assert torch.allclose(dcndr_s, dcndr, atol=1e-12)
    assert torch.allclose(dcndL_s, dcndL, atol=1e-12)
