"""Unit tests for ConfigManager."""

import unittest
import tempfile
import os
import json
from unittest.mock import patch

from raidmount.config_manager import ConfigFormat, ConfigManager, RaidMountConfig
from raidmount.errors import ConfigError


class TestConfigManager(unittest.TestCase):
    """Test cases for ConfigManager class."""

    def setUp(self):
        """Set up test fixtures."""
        self.config_manager = ConfigManager()
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up test fixtures."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name, content):
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w') as f:
            f.write(content)
        return path

    def test_default_config_creation(self):
        """Test creation of default configuration."""
        config = RaidMountConfig()

        self.assertEqual(config.log_level, "INFO")
        self.assertEqual(config.log_format, "text")
        self.assertEqual(config.max_command_timeout, 300)
        self.assertEqual(config.absent_marker, "missing")
        self.assertFalse(config.use_sudo)
        self.assertFalse(config.read_only)
        self.assertTrue(config.assume_clean)
        self.assertIsNone(config.filesystem_type)
        self.assertIsNone(config.chunk_size_kb)
        self.assertEqual(config.max_array_devices, 128)
        self.assertEqual(config.cleanup_script_dir, ".")

    def test_config_post_init(self):
        """Test mutable defaults are not shared."""
        first = RaidMountConfig()
        second = RaidMountConfig()
        first.mount_options.append('ro')

        self.assertEqual(second.mount_options, [])

    def test_load_defaults(self):
        """Test loading with no file and no environment overrides."""
        config = self.config_manager.load_config()
        self.assertEqual(config, RaidMountConfig())

    @patch.dict(os.environ, {
        'RAIDMOUNT_LOG_LEVEL': 'DEBUG',
        'RAIDMOUNT_MAX_COMMAND_TIMEOUT': '600',
        'RAIDMOUNT_USE_SUDO': 'yes',
        'RAIDMOUNT_ASSUME_CLEAN': 'false',
        'RAIDMOUNT_MOUNT_OPTIONS': 'noatime, nodev',
        'RAIDMOUNT_CHUNK_SIZE_KB': '',
    })
    def test_load_from_environment(self):
        """Test loading configuration from environment variables."""
        config = self.config_manager.load_config()

        self.assertEqual(config.log_level, 'DEBUG')
        self.assertEqual(config.max_command_timeout, 600)
        self.assertTrue(config.use_sudo)
        self.assertFalse(config.assume_clean)
        self.assertEqual(config.mount_options, ['noatime', 'nodev'])
        self.assertIsNone(config.chunk_size_kb)

    @patch.dict(os.environ, {'RAIDMOUNT_MAX_ARRAY_DEVICES': 'many'})
    def test_invalid_integer_from_environment(self):
        """Test invalid integer raises ConfigError."""
        with self.assertRaises(ConfigError):
            self.config_manager.load_config()

    def test_load_json_file(self):
        """Test loading configuration from a JSON file."""
        path = self._write('raidmount.json', json.dumps({
            'filesystem_type': 'ext4',
            'mount_options': ['noatime'],
            'metadata_version': '1.2',
            'chunk_size_kb': 128,
            'cleanup_script_dir': '/var/lib/raidmount',
            'not_a_key': True,
        }))

        config = ConfigManager(path).load_config()

        self.assertEqual(config.filesystem_type, 'ext4')
        self.assertEqual(config.mount_options, ['noatime'])
        self.assertEqual(config.metadata_version, '1.2')
        self.assertEqual(config.chunk_size_kb, 128)
        self.assertEqual(config.cleanup_script_dir, '/var/lib/raidmount')

    def test_load_yaml_file(self):
        """Test loading configuration from a YAML file."""
        path = self._write('raidmount.yaml', (
            "read_only: true\n"
            "metadata_version: 1.2\n"
            "absent_marker: gone\n"
            "mount_options:\n"
            "  - nodev\n"
            "  - nosuid\n"
        ))

        config = ConfigManager(path).load_config()

        self.assertTrue(config.read_only)
        self.assertEqual(config.metadata_version, '1.2')
        self.assertEqual(config.absent_marker, 'gone')
        self.assertEqual(config.mount_options, ['nodev', 'nosuid'])

    def test_load_empty_yaml_file(self):
        """Test an empty YAML file yields defaults."""
        path = self._write('raidmount.yml', "")
        self.assertEqual(ConfigManager(path).load_config(), RaidMountConfig())

    def test_load_env_file(self):
        """Test loading configuration from an env-style file."""
        path = self._write('raidmount.env', (
            "# raidmount settings\n"
            "RAIDMOUNT_LOG_FORMAT=json\n"
            "RAIDMOUNT_FILESYSTEM_TYPE='xfs'\n"
            "RAIDMOUNT_MAX_ARRAY_DEVICES=16\n"
            "UNRELATED=1\n"
        ))

        config = ConfigManager(path).load_config()

        self.assertEqual(config.log_format, 'json')
        self.assertEqual(config.filesystem_type, 'xfs')
        self.assertEqual(config.max_array_devices, 16)

    @patch.dict(os.environ, {'RAIDMOUNT_READ_ONLY': 'false'})
    def test_environment_overrides_file(self):
        """Test environment variables take precedence over the file."""
        path = self._write('raidmount.json', json.dumps({'read_only': True}))

        config = ConfigManager(path).load_config()

        self.assertFalse(config.read_only)

    def test_missing_file(self):
        """Test a missing config file raises ConfigError."""
        with self.assertRaises(ConfigError):
            ConfigManager(os.path.join(self.temp_dir, 'absent.yaml')).load_config()

    def test_malformed_files(self):
        """Test malformed files raise ConfigError."""
        cases = {
            'bad.json': '{"log_level": ',
            'bad.yaml': 'log_level: [unclosed',
            'list.yaml': '- just\n- a list\n',
        }
        for name, content in cases.items():
            with self.subTest(name=name):
                path = self._write(name, content)
                with self.assertRaises(ConfigError):
                    ConfigManager(path).load_config()

    def test_undecodable_files(self):
        """Test files that are not valid UTF-8 raise ConfigError."""
        cases = {
            'bad.json': b'{"log_level": "\xff"}\n',
            'bad.yaml': b'log_level: "\xff"\n',
            'bad.env': b'RAIDMOUNT_LOG_LEVEL=\xff\n',
        }
        for name, content in cases.items():
            with self.subTest(name=name):
                path = os.path.join(self.temp_dir, name)
                with open(path, 'wb') as f:
                    f.write(content)
                with self.assertRaises(ConfigError):
                    ConfigManager(path).load_config()

    def test_wrong_scalar_types_in_yaml(self):
        """Test YAML values of the wrong type raise ConfigError."""
        cases = [
            "absent_marker: 5\n",
            "log_format: [text]\n",
            "log_level: 10\n",
            "cleanup_script_dir: {a: 1}\n",
            "read_only: 1\n",
            "max_array_devices: 8.5\n",
            "max_command_timeout: true\n",
            "chunk_size_kb: [64]\n",
            "filesystem_type: 4\n",
            "mount_options: [ro, [nodev]]\n",
            "absent_marker: null\n",
        ]
        for content in cases:
            with self.subTest(content=content):
                path = self._write('typed.yaml', content)
                with self.assertRaises(ConfigError):
                    ConfigManager(path).load_config()

    def test_null_optional_values_in_yaml(self):
        """Test null is accepted for optional fields."""
        path = self._write('nulls.yaml', "filesystem_type: null\nchunk_size_kb: ~\n")

        config = ConfigManager(path).load_config()

        self.assertIsNone(config.filesystem_type)
        self.assertIsNone(config.chunk_size_kb)

    def test_apply_overrides(self):
        """Test overrides are merged, skipped when None, and cached."""
        manager = ConfigManager()

        config = manager.apply_overrides({
            'absent_marker': 'gone', 'read_only': True, 'log_level': None
        })

        self.assertEqual(config.absent_marker, 'gone')
        self.assertTrue(config.read_only)
        self.assertEqual(config.log_level, 'INFO')
        self.assertIs(manager.load_config(), config)

    def test_apply_overrides_validated(self):
        """Test overrides go through the same validation as file values."""
        invalid = [
            {'absent_marker': '/etc/x'},
            {'absent_marker': ''},
            {'log_level': 'bogus'},
            {'log_format': 'xml'},
            {'no_such_key': 1},
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                manager = ConfigManager()
                with self.assertRaises(ConfigError):
                    manager.apply_overrides(overrides)
                self.assertEqual(manager.load_config().absent_marker, 'missing')

    def test_validation_errors(self):
        """Test invalid values are rejected."""
        invalid = [
            {'max_command_timeout': 0},
            {'log_level': 'LOUD'},
            {'log_format': 'xml'},
            {'absent_marker': ''},
            {'absent_marker': 'a/b'},
            {'max_array_devices': -1},
            {'chunk_size_kb': 0},
            {'filesystem_type': 'fuse.sshfs'},
            {'mount_options': ['rw', 'exec;reboot']},
            {'mount_options': 5},
        ]
        for values in invalid:
            with self.subTest(values=values):
                path = self._write('invalid.json', json.dumps(values))
                with self.assertRaises(ConfigError):
                    ConfigManager(path).load_config()

    def test_config_caching(self):
        """Test configuration caching and reload."""
        path = self._write('raidmount.json', json.dumps({'max_array_devices': 8}))
        manager = ConfigManager(path)

        first = manager.load_config()
        self.assertIs(manager.load_config(), first)

        self._write('raidmount.json', json.dumps({'max_array_devices': 4}))
        reloaded = manager.reload_config()
        self.assertIsNot(reloaded, first)
        self.assertEqual(reloaded.max_array_devices, 4)

    def test_detect_format(self):
        """Test format detection from the file suffix."""
        self.assertEqual(ConfigManager.detect_format('a.json'), ConfigFormat.JSON)
        self.assertEqual(ConfigManager.detect_format('a.YAML'), ConfigFormat.YAML)
        self.assertEqual(ConfigManager.detect_format('a.yml'), ConfigFormat.YAML)
        self.assertEqual(ConfigManager.detect_format('.env'), ConfigFormat.ENV)
        self.assertEqual(ConfigManager.detect_format('raidmount.conf'), ConfigFormat.ENV)


if __name__ == '__main__':
    unittest.main()
