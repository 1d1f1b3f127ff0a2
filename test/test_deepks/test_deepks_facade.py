import numpy as np
import pytest
import torch

from deepks_torch.blocks import BlockStore, ProjectorLayout
from deepks_torch.config import config_from_dict
from deepks_torch.context import SimulationContext
from deepks_torch.deepks import DeePKS
from deepks_torch.model import CorrectionModel


class SquareSum(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return (x * x).sum()


def _rows(layout, seed=0):
    gen = torch.Generator().manual_seed(seed)
    rows = []
    for inl in range(layout.inlmax):
        nm = layout.nm(layout.split_inl(inl)[1])
        a = torch.randn(nm, nm, generator=gen, dtype=torch.float64)
        rows.append((a + a.T).reshape(-1).numpy())
    return rows


def _zero_gdm(layout):
    return [[np.zeros(layout.nm(layout.split_inl(inl)[1]) ** 2) for inl in range(layout.inlmax)]
            for _ in range(layout.nat)]


def test_full_evaluation_on_coordinator(tmp_path):
    layout = ProjectorLayout.from_nchi((1, 1), nat=2)
    model_file = tmp_path / 'model.ptg'
    torch.jit.script(SquareSum()).save(str(model_file))
    dk = DeePKS(SimulationContext(nat=2), layout)
    assert dk.load_model(model_file)
    d = dk.cal_descriptor(_rows(layout))
    assert d.shape == (2, 4)
    e = dk.cal_gedm()
    assert e == pytest.approx(2.0 * float((d * d).sum()))
    assert len(dk.gedm) == layout.inlmax
    z = _zero_gdm(layout)
    gvx = dk.cal_gvx(z, z, z)
    assert gvx.shape == (2, 3, 2, 4)
    assert torch.count_nonzero(gvx) == 0
    assert len(dk.gevdm_vector) == 2
    eye = [[np.eye(layout.nm(layout.split_inl(inl)[1])).reshape(-1) for inl in range(layout.inlmax)]]
    op = dk.cal_orbital_precalc(eye)
    assert op.shape == (1, 2, 4)
    assert torch.allclose(op, torch.ones_like(op))
    written = dk.save_labels(tmp_path / 'labels')
    assert set(written) == {'descriptor', 'e_delta', 'gvx', 'orbital_precalc'}
    dk.write_descriptor(tmp_path / 'descriptor.dat')
    assert (tmp_path / 'descriptor.dat').exists()


def test_gedm_of_square_model_is_twice_block_times_factor():
    # E = sum lambda^2 = ||D||_F^2, so dE/dD = 2 D
    layout = ProjectorLayout(nat=1, shell_l=(1,))
    dk = DeePKS(SimulationContext(nat=1), layout, model=CorrectionModel(SquareSum()))
    rows = _rows(layout, seed=3)
    dk.cal_descriptor(rows)
    dk.cal_gedm()
    expected = 2.0 * 2.0 * torch.as_tensor(rows[0]).reshape(3, 3)
    assert torch.allclose(dk.gedm[0], expected, atol=1e-10)


def test_other_ranks_skip_coordinator_work():
    layout = ProjectorLayout(nat=1, shell_l=(0,))
    dk = DeePKS(SimulationContext(nat=1, rank=1, nproc=2), layout, model=CorrectionModel(SquareSum()))
    dk.cal_descriptor([[1.0]])
    assert dk.cal_gedm() is None
    z = _zero_gdm(layout)
    assert dk.cal_gvx(z, z, z) is None
    assert dk.cal_orbital_precalc([[np.ones(1)]]) is None
    assert dk.save_labels('unused') == {}


def test_errors_surface_before_partial_results():
    layout = ProjectorLayout(nat=2, shell_l=(0,))
    with pytest.raises(ValueError):
        DeePKS(SimulationContext(nat=3), layout)
    dk = DeePKS(SimulationContext(nat=2), layout)
    with pytest.raises(RuntimeError):
        dk.cal_gvdm()
    dk.cal_descriptor([[1.0], [2.0]])
    with pytest.raises(RuntimeError):
        dk.cal_gedm()
    with pytest.raises(ValueError):
        dk.cal_descriptor(BlockStore(layout.with_nat(1)))


def test_new_geometry_clears_state_and_resizes_layout():
    layout = ProjectorLayout(nat=1, shell_l=(0,))
    dk = DeePKS(SimulationContext(nat=1), layout, model=CorrectionModel(SquareSum()))
    dk.cal_descriptor([[1.0]])
    dk.cal_gvdm()
    dk.set_context(SimulationContext(nat=2))
    assert dk.gevdm_vector == []
    assert not dk.engine.ready
    assert dk.layout.nat == 2
    d = dk.cal_descriptor([[1.0], [3.0]])
    assert d.squeeze(-1).tolist() == pytest.approx([1.0, 3.0])


def test_from_config_without_model_file():
    cfg = config_from_dict({'nchi': [1, 1]})
    dk = DeePKS.from_config(cfg, SimulationContext(nat=3))
    assert dk.des_per_atom == 4
    assert not dk.model.is_loaded


def test_orbital_pdm_shell_feeds_precalc():
    from deepks_torch.projection import project_density_matrix

    layout = ProjectorLayout(nat=1, shell_l=(0, 1))
    dk = DeePKS(SimulationContext(nat=1), layout)
    overlaps = torch.eye(4, dtype=torch.float64).unsqueeze(0)
    dm = torch.eye(4, dtype=torch.float64) + 0.1 * torch.ones(4, 4, dtype=torch.float64)
    dk.cal_descriptor(project_density_matrix(dm, overlaps, layout))
    shells = dk.cal_orbital_pdm_shell(torch.eye(4, dtype=torch.float64), overlaps)
    assert [tuple(s.shape) for s in shells] == [(1, 1, 1, 1), (1, 1, 3, 3)]
    op = dk.cal_orbital_precalc(shells)
    assert torch.allclose(op, torch.ones(1, 1, 4, dtype=torch.float64))


def test_new_blocks_drop_labels_of_previous_step(tmp_path):
    layout = ProjectorLayout(nat=1, shell_l=(0,))
    dk = DeePKS(SimulationContext(nat=1), layout, model=CorrectionModel(SquareSum()))
    dk.cal_descriptor([[1.0]])
    assert dk.cal_gedm() == pytest.approx(2.0)
    z = _zero_gdm(layout)
    dk.cal_gvx(z, z, z)
    dk.cal_orbital_precalc([[np.ones(1)]])
    dk.cal_descriptor([[3.0]])
    assert dk.gvx_tensor is None
    assert dk.orbital_precalc_tensor is None
    assert dk.e_delta == 0.0
    assert dk.gedm == []
    written = dk.save_labels(tmp_path / 'labels')
    assert set(written) == {'descriptor'}
    assert np.load(written['descriptor']).tolist() == [[3.0]]


def test_set_context_drops_model_outputs():
    layout = ProjectorLayout(nat=1, shell_l=(0,))
    dk = DeePKS(SimulationContext(nat=1), layout, model=CorrectionModel(SquareSum()))
    dk.cal_descriptor([[1.0]])
    dk.cal_gedm()
    assert dk.gedm
    dk.set_context(SimulationContext(nat=1))
    assert dk.e_delta == 0.0
    assert dk.gedm == []


def test_from_config_applies_dtype_and_builds_context():
    cfg = config_from_dict({'nchi': [1], 'dtype': 'float32'})
    dk = DeePKS.from_config(cfg, SimulationContext(nat=1, rank=0, nproc=2))
    assert dk.ctx.dtype == torch.float32
    assert dk.ctx.nproc == 2
    assert dk.cal_descriptor([[2.0]]).dtype == torch.float32
    dk = DeePKS.from_config(cfg, nat=2)
    assert dk.ctx.nat == 2
    assert dk.ctx.dtype == torch.float32
    with pytest.raises(ValueError):
        DeePKS.from_config(cfg)


def test_finish_writes_labels_only_when_configured(tmp_path):
    out_dir = tmp_path / 'labels'
    cfg = config_from_dict({'nchi': [1], 'out_labels': True, 'out_dir': str(out_dir)})
    dk = DeePKS.from_config(cfg, SimulationContext(nat=1))
    assert dk.out_dir == out_dir
    dk.cal_descriptor([[2.0]])
    written = dk.finish()
    assert set(written) == {'descriptor'}
    assert (out_dir / 'dm_eig.npy').exists()
    quiet = DeePKS.from_config(config_from_dict({'nchi': [1]}), SimulationContext(nat=1))
    quiet.cal_descriptor([[2.0]])
    assert quiet.finish() == {}
