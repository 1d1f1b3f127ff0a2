import pytest
import torch

from deepks_torch.config import config_from_dict, load_config


def test_load_config_resolves_paths_and_layout(tmp_path):
    p = tmp_path / 'deepks.toml'
    p.write_text(
        '[deepks]\n'
        'model_file = "model.ptg"\n'
        'nchi = [2, 2, 1]\n'
        'out_labels = true\n'
        'dtype = "float64"\n'
    )
    cfg = load_config(p)
    assert cfg.model_file == tmp_path / 'model.ptg'
    assert cfg.out_dir == tmp_path / 'OUT.deepks'
    assert cfg.out_labels is True
    assert cfg.torch_dtype == torch.float64
    assert cfg.energy_factor == pytest.approx(2.0)
    layout = cfg.layout(nat=4)
    assert layout.nlmax == 5
    assert layout.des_per_atom == 13


def test_inl_l_layout_and_unit_override():
    cfg = config_from_dict({'inl_l': [0, 1, 0, 1], 'energy_unit': 'Hartree', 'host_unit': 'eV'})
    assert cfg.layout(nat=2).shell_l == (0, 1)
    assert cfg.energy_factor == pytest.approx(27.211386, rel=1e-6)


@pytest.mark.parametrize('data', [
    {'nchi': [1], 'unknown': 1},
    {'nchi': [1], 'inl_l': [0]},
    {'nchi': 'spd'},
    {'nchi': [1], 'dtype': 'int8'},
    {'nchi': [1], 'energy_unit': 'Parsec'},
    {'nchi': [1], 'out_labels': 'yes'},
])
def test_invalid_settings_raise(data):
    with pytest.raises(ValueError):
        config_from_dict(data)


def test_missing_file_and_section(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / 'nope.toml')
    p = tmp_path / 'empty.toml'
    p.write_text('[other]\nx = 1\n')
    with pytest.raises(ValueError):
        load_config(p)


def test_layout_requires_shells():
    with pytest.raises(ValueError):
        config_from_dict({}).layout(nat=1)


def test_device_and_dtype_resolution():
    from deepks_torch.device import get_device, resolve_dtype

    assert get_device('cpu') == torch.device('cpu')
    assert resolve_dtype('double') is torch.float64
    assert resolve_dtype(torch.float32) is torch.float32
    with pytest.raises(ValueError):
        resolve_dtype('complex')
