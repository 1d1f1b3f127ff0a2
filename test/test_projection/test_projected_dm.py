import pytest
import torch

from deepks_torch.blocks import ProjectorLayout
from deepks_torch.context import SimulationContext
from deepks_torch.projection import neighbor_mask, orbital_pdm_shell, project_density_matrix


def _sym(n, seed):
    gen = torch.Generator().manual_seed(seed)
    a = torch.randn(n, n, generator=gen, dtype=torch.float64)
    return a + a.T


def test_unit_overlap_projects_diagonal_blocks():
    layout = ProjectorLayout(nat=1, shell_l=(0, 1))
    nao = layout.des_per_atom
    dm = _sym(nao, 0)
    overlaps = torch.eye(nao, dtype=torch.float64).unsqueeze(0)
    store = project_density_matrix(dm, overlaps, layout)
    assert torch.allclose(store.block(0, 0), dm[:1, :1])
    assert torch.allclose(store.block(0, 1), dm[1:4, 1:4])


def test_projection_matches_explicit_sum():
    layout = ProjectorLayout(nat=2, shell_l=(1,))
    nao = 5
    gen = torch.Generator().manual_seed(1)
    overlaps = torch.randn(2, nao, 3, generator=gen, dtype=torch.float64)
    dm = _sym(nao, 2)
    store = project_density_matrix(dm, overlaps, layout)
    for a in range(2):
        n = overlaps[a]
        assert torch.allclose(store.block(a, 0), n.T @ dm @ n)


def test_orbital_shell_uses_transposed_density():
    layout = ProjectorLayout(nat=1, shell_l=(1,))
    gen = torch.Generator().manual_seed(3)
    overlaps = torch.randn(1, 4, 3, generator=gen, dtype=torch.float64)
    dm_hl = torch.randn(4, 4, generator=gen, dtype=torch.float64)
    shells = orbital_pdm_shell(dm_hl, overlaps, layout)
    assert shells[0].shape == (1, 1, 3, 3)
    n = overlaps[0]
    assert torch.allclose(shells[0][0, 0], n.T @ dm_hl.T @ n)


def test_neighbor_mask_and_cutoff():
    positions = torch.tensor([[0.0, 0.0, 0.0], [10.0, 0.0, 0.0]], dtype=torch.float64)
    ao_atoms = torch.tensor([0, 0, 1])
    mask = neighbor_mask(positions, ao_atoms, rcut_alpha=2.0, rcut_ao=torch.tensor([3.0, 3.0]), per_atom=True)
    assert mask.tolist() == [[True, True, False], [False, False, True]]
    layout = ProjectorLayout(nat=2, shell_l=(0,))
    overlaps = torch.ones(2, 3, 1, dtype=torch.float64)
    dm = torch.ones(3, 3, dtype=torch.float64)
    store = project_density_matrix(dm, overlaps, layout, mask=mask)
    assert store.block(0, 0).item() == pytest.approx(4.0)
    assert store.block(1, 0).item() == pytest.approx(1.0)


def test_neighbor_mask_cutoff_form_is_explicit():
    # nat == nao: the same radii mean different things per atom and per AO
    positions = torch.tensor([[0.0, 0.0, 0.0], [4.0, 0.0, 0.0]], dtype=torch.float64)
    ao_atoms = torch.tensor([1, 0])
    rcut = torch.tensor([1.0, 5.0], dtype=torch.float64)
    per_atom = neighbor_mask(positions, ao_atoms, rcut_alpha=0.0, rcut_ao=rcut, per_atom=True)
    per_ao = neighbor_mask(positions, ao_atoms, rcut_alpha=0.0, rcut_ao=rcut)
    assert per_atom.tolist() == [[True, True], [True, False]]
    assert per_ao.tolist() == [[False, True], [True, True]]
    with pytest.raises(ValueError):
        neighbor_mask(positions, torch.tensor([0, 0, 1]), rcut_alpha=0.0, rcut_ao=rcut)
    with pytest.raises(ValueError):
        neighbor_mask(positions, ao_atoms, rcut_alpha=0.0, rcut_ao=torch.ones(3), per_atom=True)


def test_partial_blocks_are_sum_reduced():
    calls = []

    def reduce_sum(t):
        calls.append(tuple(t.shape))
        return 2.0 * t

    layout = ProjectorLayout(nat=1, shell_l=(0,))
    ctx = SimulationContext(nat=1, rank=0, nproc=2, reduce_sum=reduce_sum)
    store = project_density_matrix(torch.eye(1, dtype=torch.float64) * 3.0, torch.ones(1, 1, 1, dtype=torch.float64), layout, ctx=ctx)
    assert store.block(0, 0).item() == pytest.approx(6.0)
    assert calls == [(1, 1, 1)]


def test_bad_overlap_shape_raises():
    layout = ProjectorLayout(nat=2, shell_l=(1,))
    with pytest.raises(ValueError):
        project_density_matrix(torch.eye(3), torch.zeros(1, 3, 3), layout)
    with pytest.raises(ValueError):
        project_density_matrix(torch.eye(4), torch.zeros(2, 3, 3), layout)
