import math

import pytest
import torch

from eeqtorch.charges.eeq import EEQModel
from eeqtorch.params.loader import (
    default_eeq_params,
    default_ncoord_params,
    load_eeq_params,
    load_ncoord_params,
    parse_element_key,
)
from eeqtorch.structure import Structure


TOML = """
[meta]
name = "test"

[element.H]
chi = 1.23695041
eta = -0.35015861
kcn = 0.04916110
rad = 0.55159092

[element.8]
chi = 1.56866440
eta = 0.03151644
kcn = 0.11689703
rad = 1.23166285
"""


def _write(tmp_path, text, name="eeq.toml"):
    p = tmp_path / name
    p.write_text(text)
    return p


def test_parse_element_key():
    assert parse_element_key("8") == 8
    assert parse_element_key("O") == 8
    assert parse_element_key("cl") == 17
    with pytest.raises(ValueError):
        parse_element_key("Xx")
    with pytest.raises(ValueError):
        parse_element_key("0")


def test_default_params_cover_h_to_rn():
    p = default_eeq_params()
    assert p.max_number == 86
    for t in (p.chi, p.eta, p.kcn, p.rad):
        assert t.dtype == torch.float64
        assert torch.all(torch.isfinite(t[1:]))
    nc = default_ncoord_params()
    assert nc.counting == "erf" and nc.cn_max == pytest.approx(8.0) and nc.cutoff == pytest.approx(25.0)
    assert nc.rcov.shape == p.chi.shape


def test_load_eeq_params(tmp_path):
    p = load_eeq_params(_write(tmp_path, TOML))
    assert p.max_number == 8
    assert p.chi[1].item() == pytest.approx(1.23695041)
    assert p.rad[8].item() == pytest.approx(1.23166285)
    assert math.isnan(p.eta[6].item())
    ref = default_eeq_params()
    assert p.kcn[8].item() == pytest.approx(ref.kcn[8].item(), rel=1e-6)


def test_model_from_file_matches_builtin_for_water(tmp_path):
    mol = Structure.new([8, 1, 1], [[0.0, 0.0, 0.0], [1.81, 0.0, 0.0], [-0.45, 1.75, 0.0]])
    q_file = EEQModel.from_file(_write(tmp_path, TOML)).evaluate(mol).charges
    q_ref = EEQModel.param2019().evaluate(mol).charges
    assert torch.allclose(q_file, q_ref, atol=1e-6)


def test_missing_species_rejected(tmp_path):
    model = EEQModel.from_file(_write(tmp_path, TOML))
    with pytest.raises(ValueError):
        model.check_species(torch.tensor([6, 1]))


def test_load_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_eeq_params(tmp_path / "missing.toml")
    with pytest.raises(ValueError):
        load_eeq_params(_write(tmp_path, "[meta]\nname = 'x'\n", "empty.toml"))
    bad = "[element.H]\nchi = 1.0\neta = 0.5\nrad = 0.8\n"
    with pytest.raises(ValueError):
        load_eeq_params(_write(tmp_path, bad, "bad.toml"))
    dup = TOML + "\n[element.1]\nchi = 1.0\neta = 0.5\nkcn = 0.0\nrad = 0.8\n"
    with pytest.raises(ValueError):
        load_eeq_params(_write(tmp_path, dup, "dup.toml"))


def test_load_ncoord_params(tmp_path):
    assert load_ncoord_params(_write(tmp_path, TOML)).cn_max == pytest.approx(8.0)
    text = TOML + '\n[ncoord]\ncounting = "exp"\nsteepness = 10.0\ncutoff = 30.0\ncn_max = -1\n\n[ncoord.rcov]\nH = 0.7\n'
    nc = load_ncoord_params(_write(tmp_path, text, "nc.toml"))
    assert nc.counting == "exp"
    assert nc.steepness == pytest.approx(10.0) and nc.cutoff == pytest.approx(30.0)
    assert nc.cn_max is None
    assert nc.rcov[1].item() == pytest.approx(0.7)
    with pytest.raises(ValueError):
        load_ncoord_params(_write(tmp_path, TOML + '\n[ncoord]\ncounting = "gauss"\n', "g.toml"))
    with pytest.raises(ValueError):
        load_ncoord_params(_write(tmp_path, TOML + "\n[ncoord]\ncutoff = 0.0\n", "c.toml"))
