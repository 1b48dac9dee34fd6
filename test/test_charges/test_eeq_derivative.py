import pytest
import torch

from eeqtorch.charges.damat import get_damat_0d, get_damat_3d
from eeqtorch.charges.eeq import EEQModel
from eeqtorch.pbc.ewald import get_alpha
from eeqtorch.pbc.wignerseitz import WignerSeitzCell
from eeqtorch.structure import Structure


MOLECULES = [
    Structure.new([8, 1, 1], [[0.0, 0.0, 0.0], [1.81, 0.0, 0.0], [-0.45, 1.75, 0.0]]),
    Structure.new([8, 1], [[0.0, 0.0, 0.0], [1.83, 0.1, -0.05]], charge=-1.0),
    Structure.new(
        [6, 8, 1, 1, 1, 1],
        [
            [0.0, 0.0, 0.0],
            [2.69, 0.12, 0.0],
            [-0.68, 1.93, 0.05],
            [-0.71, -0.98, 1.66],
            [-0.69, -0.94, -1.68],
            [3.31, -1.58, 0.21],
        ],
    ),
]

CRYSTALS = [
    Structure.new(
        [11, 17, 8],
        [[0.3, 0.2, 0.1], [4.1, 4.6, 4.4], [1.9, 5.8, 2.2]],
        lattice=[[9.0, 0.2, 0.0], [0.0, 8.6, 0.3], [0.1, 0.0, 9.4]],
    ),
    Structure.new(
        [3, 9],
        [[0.1, 0.3, 0.2], [3.1, 3.6, 4.6]],
        lattice=[[7.6, 0.0, 0.0], [0.4, 7.7, 0.0], [0.0, 0.3, 7.9]],
    ),
]


def finite_diff_E(model, mol, h=1e-4):
    grad = torch.zeros_like(mol.positions)
    for a in range(mol.nat):
        for k in range(3):
            pos_p = mol.positions.clone(); pos_p[a, k] += h
            pos_m = mol.positions.clone(); pos_m[a, k] -= h
            ep = model.evaluate(mol.with_positions(pos_p)).energy.sum()
            em = model.evaluate(mol.with_positions(pos_m)).energy.sum()
            grad[a, k] = (ep - em) / (2 * h)
    return grad


def _strained(mol, eps):
    deform = torch.eye(3, dtype=mol.positions.dtype) + eps
    lattice = None if mol.lattice is None else mol.lattice @ deform
    return mol.with_positions(mol.positions @ deform, lattice)


def finite_diff_strain(model, mol, h=1e-4, what="energy"):
    out = None
    for x in range(3):
        for y in range(3):
            eps = torch.zeros(3, 3, dtype=mol.positions.dtype)
            eps[x, y] = h
            rp = model.evaluate(_strained(mol, eps))
            rm = model.evaluate(_strained(mol, -eps))
            if what == "energy":
                d = (rp.energy.sum() - rm.energy.sum()) / (2 * h)
                out = torch.zeros(3, 3, dtype=d.dtype) if out is None else out
            else:
                d = (rp.charges - rm.charges) / (2 * h)
                out = torch.zeros(mol.nat, 3, 3, dtype=d.dtype) if out is None else out
            out[..., x, y] = d
    return out


@pytest.mark.parametrize("mol", MOLECULES)
def test_energy_gradient_fd_0d(mol):
    model = EEQModel.param2019()
    res = model.evaluate(mol, gradient=True)
    assert res.gradient.shape == (mol.nat, 3)
    assert torch.allclose(res.gradient, finite_diff_E(model, mol), atol=1e-6)


@pytest.mark.parametrize("mol", CRYSTALS)
def test_energy_gradient_fd_3d(mol):
    model = EEQModel.param2019()
    res = model.evaluate(mol, gradient=True)
    assert torch.allclose(res.gradient, finite_diff_E(model, mol), atol=1e-6)


@pytest.mark.parametrize("mol", MOLECULES[:2])
def test_gradient_sums_to_zero_0d(mol):
    res = EEQModel.param2019().evaluate(mol, gradient=True)
    assert torch.allclose(res.gradient.sum(dim=0), torch.zeros(3, dtype=torch.float64), atol=1e-10)


@pytest.mark.parametrize("mol", MOLECULES + CRYSTALS)
def test_charge_response_fd(mol):
    model = EEQModel.param2019()
    res = model.evaluate(mol, response=True)
    assert res.dqdr.shape == (mol.nat, mol.nat, 3)
    eps = 1e-4
    for X in range(mol.nat):
        for k in range(3):
            pos_p = mol.positions.clone(); pos_p[X, k] += eps
            pos_m = mol.positions.clone(); pos_m[X, k] -= eps
            qp = model.evaluate(mol.with_positions(pos_p)).charges
            qm = model.evaluate(mol.with_positions(pos_m)).charges
            dq_fd = (qp - qm) / (2 * eps)
            assert torch.allclose(res.dqdr[:, X, k], dq_fd, rtol=1e-4, atol=1e-6)


@pytest.mark.parametrize("mol", [MOLECULES[0], MOLECULES[2]] + CRYSTALS)
def test_sigma_fd(mol):
    model = EEQModel.param2019()
    res = model.evaluate(mol, gradient=True)
    assert torch.allclose(res.sigma, res.sigma.T, atol=1e-10)
    assert torch.allclose(res.sigma, finite_diff_strain(model, mol), atol=1e-6)


@pytest.mark.parametrize("mol", [MOLECULES[0]] + CRYSTALS[:1])
def test_charge_strain_response_fd(mol):
    model = EEQModel.param2019()
    res = model.evaluate(mol, response=True)
    ref = finite_diff_strain(model, mol, h=1e-5, what="charges")
    assert torch.allclose(res.dqdL, ref, rtol=1e-4, atol=1e-6)


def test_damat_translational_invariance_0d():
    model = EEQModel.param2019()
    mol = MOLECULES[2]
    q = model.evaluate(mol).charges
    dadr, dadL, atrace = get_damat_0d(model.params, mol, q)
    # Σ_a dA_km/dR_a = 0 for every pair, so the off-site sum balances the trace
    full = dadr.clone()
    idx = torch.arange(mol.nat)
    full[idx, idx] += atrace
    assert torch.allclose(full.sum(dim=1), torch.zeros(mol.nat, 3, dtype=torch.float64), atol=1e-12)
    assert torch.allclose(dadL, dadL.transpose(-1, -2), atol=1e-12)


def test_damat_3d_threaded_matches_serial():
    model = EEQModel.param2019()
    mol = CRYSTALS[0]
    q = model.evaluate(mol).charges
    wsc = WignerSeitzCell.new(mol.positions, mol.lattice)
    alpha = get_alpha(mol.lattice)
    serial = get_damat_3d(model.params, mol, wsc, alpha, q, workers=1)
    threaded = get_damat_3d(model.params, mol, wsc, alpha, q, workers=2)
    for a, b in zip(serial, threaded):
        assert torch.allclose(a, b, atol=1e-12)
