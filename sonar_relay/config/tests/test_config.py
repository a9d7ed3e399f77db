import os
import tempfile

import pytest
import yaml

from sonar_relay.config import ConfigurationService
from sonar_relay.config.log import _correlation_id_processor, _parse_file_size
from sonar_relay.config.models import DEFAULT_RELAY_HEADERS, ConfigModel


@pytest.mark.parametrize("scenario,config_data,validation,should_raise,error_match", [
    ("defaults for non-existent file",
     None,
     lambda c: c.host == '0.0.0.0' and c.port == 3000 and c.upstream_base_url == 'https://api.perplexity.ai' and c.poll_interval_seconds == 3.0,
     False, None),
    ("values from yaml file",
     {'port': 9000, 'dev': True, 'upstream_base_url': 'http://localhost:8080', 'relay_headers': ['content-type']},
     lambda c: c.port == 9000 and c.dev is True and c.upstream_base_url == 'http://localhost:8080' and c.relay_headers == ['content-type'],
     False, None),
    ("nested logging section",
     {'logging': {'level': 'DEBUG', 'file_enabled': True}},
     lambda c: c.logging.level == 'DEBUG' and c.logging.file_enabled and c.logging.console_enabled,
     False, None),
    ("invalid yaml",
     '{ invalid yaml',
     None,
     True, 'Invalid YAML'),
])
def test_config_loading(scenario, config_data, validation, should_raise, error_match):
    """Test configuration loading scenarios."""
    if config_data is None:
        config = ConfigModel.load('non-existent-config.yaml')
        assert validation(config)
        return

    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        if isinstance(config_data, str):
            f.write(config_data)
        else:
            yaml.dump(config_data, f)
        temp_path = f.name
    try:
        if should_raise:
            with pytest.raises(ValueError, match=error_match):
                ConfigModel.load(temp_path)
        else:
            assert validation(ConfigModel.load(temp_path))
    finally:
        os.unlink(temp_path)


def test_config_validation():
    assert ConfigModel(port=8080).port == 8080
    assert ConfigModel().relay_headers == DEFAULT_RELAY_HEADERS

    for bad in ({'port': 0}, {'port': 65536}, {'poll_interval_seconds': 0}, {'upstream_timeout': -1}):
        with pytest.raises(ValueError):
            ConfigModel(**bad)


def test_save_and_reload_round_trip(tmp_path):
    path = tmp_path / 'config.yaml'
    ConfigModel(port=4000, cors_allow_origins=['http://localhost:5173']).save(str(path))

    service = ConfigurationService(config_path=str(path))
    assert service.get_config().port == 4000

    path.write_text(yaml.dump({'port': 4001}))
    assert service.reload_config().port == 4001
    assert service.get_config().cors_allow_origins == []


def test_injected_config_is_not_loaded_from_disk():
    config = ConfigModel(port=1234)
    assert ConfigurationService(config_path='does-not-matter.yaml', config=config).get_config() is config


@pytest.mark.parametrize('value,expected', [
    ('10MB', 10 * 1024**2),
    ('512kb', 512 * 1024),
    ('2G', 2 * 1024**3),
    ('100', 100 * 1024**2),
    ('lots', 10 * 1024**2),
])
def test_parse_file_size(value, expected):
    assert _parse_file_size(value) == expected


def test_correlation_id_processor_keeps_explicit_id():
    assert _correlation_id_processor(None, 'info', {'correlation_id': 'given'}) == {'correlation_id': 'given'}
    assert _correlation_id_processor(None, 'info', {})['correlation_id'] == '-'
