import logging

import pytest
import yaml

from carbon_stock_model.core.carbon_stock_pipeline import REQUIRED_SECTIONS
from carbon_stock_model.scripts.run_carbon_stock_estimation import apply_overrides, main, parse_arguments
from shared_utils import get_config_value, get_logger, load_config, log_pipeline_start, save_config, validate_config

from conftest import PACKAGED_CONFIG


def test_load_explicit_path_records_source(tmp_path):
    path = tmp_path / 'custom.yaml'
    path.write_text('sampling:\n  n_samples: 10\n')

    config = load_config(path)

    assert config['sampling']['n_samples'] == 10
    assert config['_meta']['config_file'] == str(path.absolute())


def test_load_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / 'missing.yaml')


def test_load_rejects_non_mapping(tmp_path):
    path = tmp_path / 'list.yaml'
    path.write_text('- a\n- b\n')

    with pytest.raises(ValueError):
        load_config(path)


def test_get_config_value():
    config = {'training': {'ensemble': {'n_trees': 50}}}

    assert get_config_value(config, 'training.ensemble.n_trees') == 50
    assert get_config_value(config, 'training.linear.tolerance', 1e-8) == 1e-8
    assert get_config_value(config, 'training.ensemble.n_trees.depth', 'x') == 'x'


def test_validate_config_missing_sections():
    with pytest.raises(ValueError, match='output'):
        validate_config({'sampling': {}}, ['sampling', 'output'])


def test_packaged_config_is_complete():
    config = load_config(PACKAGED_CONFIG)

    assert validate_config(config, REQUIRED_SECTIONS)
    assert config['training']['variant'] in ('ensemble', 'linear')


def test_save_config_drops_metadata(tmp_path):
    config = load_config(PACKAGED_CONFIG)
    path = tmp_path / 'nested' / 'run_config.yaml'
    save_config(config, path)

    with open(path) as f:
        saved = yaml.safe_load(f)

    assert '_meta' not in saved
    assert saved['sampling'] == config['sampling']


def test_cli_overrides(config):
    args = parse_arguments(['--lon', '80.5', '--lat', '7.1', '--variant', 'linear', '--seed', '7', '--n-trees', '20'])

    config = apply_overrides(config, args)

    assert config['region']['point'] == [80.5, 7.1]
    assert config['training']['variant'] == 'linear'
    assert config['sampling']['seed'] == 7
    assert config['training']['ensemble']['seed'] == 7
    assert config['training']['ensemble']['n_trees'] == 20


def test_cli_rejects_missing_config(tmp_path):
    assert main(['--config', str(tmp_path / 'missing.yaml')]) is False
    assert main(['--lon', '80.5']) is False


def test_pipeline_start_echoes_run_parameters(config, caplog):
    with caplog.at_level(logging.INFO, logger='carbon_stock'):
        log_pipeline_start(get_logger('test'), 'Carbon Stock Estimation', config)

    assert 'Model variant: ensemble' in caplog.text
    assert 'Period: 2022-01-01 to 2023-01-01 (end exclusive)' in caplog.text
    assert 'Configuration file:' in caplog.text
