"""
Unit tests for configuration loader module.
"""

import logging

import pytest
import yaml
from pathlib import Path
from unittest.mock import patch

from schemaform import config_loader
from schemaform.config_loader import (
    load_config, validate_config, get_default_config, deep_merge, get_config, get_config_value,
    get_logging_level, reload_config, configure_logging
)


class TestDeepMerge:
    """Test cases for deep_merge function."""

    def test_deep_merge_simple_dicts(self):
        """Test deep merging of simple dictionaries."""
        base = {'a': 1, 'b': 2}
        update = {'b': 3, 'c': 4}

        result = deep_merge(base, update)

        assert result == {'a': 1, 'b': 3, 'c': 4}
        # Ensure original dicts are not modified
        assert base == {'a': 1, 'b': 2}
        assert update == {'b': 3, 'c': 4}

    def test_deep_merge_nested_dicts(self):
        """Test deep merging of nested dictionaries."""
        base = {'lookup': {'base_url': '', 'timeout': 10.0}, 'app': {'name': 'schemaform'}}
        update = {'lookup': {'base_url': 'http://backend'}}

        result = deep_merge(base, update)

        assert result == {'lookup': {'base_url': 'http://backend', 'timeout': 10.0}, 'app': {'name': 'schemaform'}}

    def test_deep_merge_lists_are_replaced(self):
        """Lists are replaced, not concatenated."""
        base = {'initialization': {'source_precedence': ['saved_link', 'query_params', 'default']}}
        update = {'initialization': {'source_precedence': ['query_params']}}

        result = deep_merge(base, update)

        assert result['initialization']['source_precedence'] == ['query_params']


class TestGetDefaultConfig:
    """Test cases for get_default_config function."""

    def test_get_default_config_structure(self):
        """Test that default config has expected structure."""
        config = get_default_config()

        assert set(config.keys()) == {'app', 'logging', 'lookup', 'initialization', 'validation'}
        assert config['logging']['level'] == 'INFO'
        assert config['lookup']['base_url'] == ''
        assert config['initialization']['source_precedence'] == ['saved_link', 'query_params', 'default']

    def test_default_config_is_valid(self):
        assert validate_config(get_default_config()) is True

    def test_get_default_config_returns_fresh_copy(self):
        first = get_default_config()
        first['lookup']['timeout'] = 1

        assert get_default_config()['lookup']['timeout'] == 10.0


class TestLoadConfig:
    """Test cases for load_config function."""

    def test_load_config_file_not_found(self, tmp_path):
        """Missing file falls back to defaults."""
        assert load_config(tmp_path / 'missing.yaml') == get_default_config()

    def test_load_config_empty_file(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text('')

        assert load_config(config_file) == get_default_config()

    def test_load_config_invalid_yaml(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text('lookup: [unclosed')

        assert load_config(config_file) == get_default_config()

    def test_load_config_not_a_mapping(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text('- just\n- a list\n')

        assert load_config(config_file) == get_default_config()

    def test_load_config_merges_over_defaults(self, tmp_path):
        """Partial user config keeps the other defaults."""
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump({
            'lookup': {'base_url': 'http://backend.local'},
            'logging': {'level': 'DEBUG'}
        }))

        config = load_config(config_file)

        assert config['lookup'] == {'base_url': 'http://backend.local', 'timeout': 10.0}
        assert config['logging']['level'] == 'DEBUG'
        assert config['validation'] == get_default_config()['validation']

    def test_load_config_repairs_invalid_sections(self, tmp_path):
        """Only the invalid sections are replaced by defaults."""
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump({
            'lookup': {'base_url': 'http://backend.local', 'timeout': -1},
            'initialization': {'source_precedence': 'saved_link'},
            'logging': {'level': 'DEBUG'}
        }))

        config = load_config(config_file)

        assert config['lookup'] == get_default_config()['lookup']
        assert config['initialization'] == get_default_config()['initialization']
        assert config['logging']['level'] == 'DEBUG'

    def test_load_config_read_error_uses_defaults(self, tmp_path):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text('app: {}')

        with patch('builtins.open', side_effect=PermissionError('denied')):
            config = load_config(config_file)

        assert config == get_default_config()


class TestValidateConfig:
    """Test cases for validate_config function."""

    @pytest.mark.parametrize('section, value', [
        ('lookup', 'not a dict'),
        ('lookup', {'timeout': 0}),
        ('lookup', {'timeout': 'slow'}),
        ('initialization', {'source_precedence': ['saved_link', 3]}),
        ('logging', {'level': 10}),
    ])
    def test_invalid_sections(self, section, value):
        config = get_default_config()
        config[section] = value

        assert validate_config(config) is False

    def test_missing_section(self):
        config = get_default_config()
        del config['validation']

        assert validate_config(config) is False


class TestConfigAccess:
    """Test cases for cached access helpers."""

    def test_get_config_value_from_given_config(self):
        config = {'lookup': {'timeout': 3}}

        assert get_config_value('lookup', 'timeout', 10, config) == 3
        assert get_config_value('lookup', 'base_url', 'x', config) == 'x'
        assert get_config_value('missing', 'key', 'fallback', config) == 'fallback'

    def test_get_config_value_non_dict_section(self):
        assert get_config_value('lookup', 'timeout', 5, {'lookup': 'oops'}) == 5

    def test_get_config_is_cached_until_reload(self, tmp_path, monkeypatch):
        config_file = tmp_path / 'config.yaml'
        config_file.write_text(yaml.safe_dump({'app': {'name': 'first'}}))
        monkeypatch.setattr(config_loader, 'CONFIG_FILE', config_file)
        reload_config()

        assert get_config()['app']['name'] == 'first'

        config_file.write_text(yaml.safe_dump({'app': {'name': 'second'}}))
        assert get_config()['app']['name'] == 'first'
        assert get_config(reload=True)['app']['name'] == 'second'

        reload_config()


class TestLogging:
    """Test cases for logging configuration."""

    @pytest.mark.parametrize('level_str, expected', [
        ('DEBUG', logging.DEBUG),
        ('info', logging.INFO),
        ('Warning', logging.WARNING),
        ('ERROR', logging.ERROR),
        ('CRITICAL', logging.CRITICAL),
        ('VERBOSE', logging.INFO),
        (None, logging.INFO),
    ])
    def test_get_logging_level(self, level_str, expected):
        assert get_logging_level(level_str) == expected

    def test_configure_logging_returns_applied_level(self):
        with patch('logging.basicConfig') as basic_config:
            level = configure_logging({'logging': {'level': 'DEBUG', 'format': '%(message)s'}})

        assert level == logging.DEBUG
        basic_config.assert_called_once_with(level=logging.DEBUG, format='%(message)s')
