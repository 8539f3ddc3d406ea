"""Tests for configuration loading and the repository store."""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from code_deployer.config import (
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    Config,
    ConfigManager,
    load_repositories,
    save_repositories,
)
from code_deployer.exceptions import ConfigurationInvalidError, ConfigurationMissingError


class TestConfigDefaults:
    def test_default_policy_swallows_but_rethrows_fatal_errors(self):
        config = Config()

        policy = config.exception_policies[config.default_policy_name]
        assert policy.action == "swallow"
        assert "MemoryError" in policy.rethrow_types

    def test_log_level_is_normalized(self):
        assert Config(log_level="debug").log_level == "DEBUG"

    def test_unknown_log_level_is_rejected(self):
        with pytest.raises(ValueError):
            Config(log_level="chatty")


class TestConfigManager:
    def test_load_missing_file_returns_defaults(self, tmp_path):
        manager = ConfigManager(tmp_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME)

        config = manager.load()

        assert config.repositories_file == Path("repositories.json")

    def test_save_then_load(self, tmp_path):
        manager = ConfigManager(tmp_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
        config = Config(process_timeout_seconds=42)
        config.scheduler.retry_interval_seconds = 5

        manager.save(config)
        loaded = ConfigManager(manager.config_path).load()

        assert loaded.process_timeout_seconds == 42
        assert loaded.scheduler.retry_interval_seconds == 5

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / CONFIG_FILE_NAME
        path.write_text("{not json")

        with pytest.raises(ConfigurationInvalidError):
            ConfigManager(path).load()

    def test_find_config_walks_up(self, tmp_path):
        manager = ConfigManager(tmp_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME)
        manager.save(Config())
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)

        assert ConfigManager.find_config(nested) == manager.config_path.resolve()

    def test_create_with_backtrack_defaults_to_start_dir(self, tmp_path):
        manager = ConfigManager.create_with_backtrack(tmp_path)

        assert manager.config_path == tmp_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME

    def test_repositories_path_relative_to_config_dir(self, tmp_path):
        manager = ConfigManager(tmp_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME)

        assert manager.get_repositories_path() == (
            tmp_path / CONFIG_DIR_NAME / "repositories.json"
        ).resolve()

    def test_absolute_repositories_path_is_kept(self, tmp_path):
        manager = ConfigManager(tmp_path / CONFIG_FILE_NAME)
        manager.save(Config(repositories_file=tmp_path / "elsewhere.json"))

        assert manager.get_repositories_path() == tmp_path / "elsewhere.json"


class TestRepositoryStore:
    def test_round_trip_preserves_order_and_fields(self, tmp_path, four_repositories):
        four_repositories[2].needs_deployment = True
        path = tmp_path / "repositories.json"

        save_repositories(four_repositories, path)
        loaded = load_repositories(path)

        assert [r.name for r in loaded] == [r.name for r in four_repositories]
        assert loaded[2].needs_deployment
        assert loaded[0].check_interval == timedelta(hours=3)
        assert loaded[0].last_checked_at == four_repositories[0].last_checked_at
        assert loaded == four_repositories

    def test_store_is_a_json_list(self, tmp_path, make_repository):
        path = tmp_path / "repositories.json"

        save_repositories([make_repository()], path)

        data = json.loads(path.read_text())
        assert isinstance(data, list)
        assert data[0]["deployment_branch_name"] == "Live"

    def test_save_leaves_no_temp_files(self, tmp_path, make_repository):
        path = tmp_path / "repositories.json"

        save_repositories([make_repository()], path)
        save_repositories([make_repository(2)], path)

        assert [p.name for p in tmp_path.iterdir()] == ["repositories.json"]

    def test_empty_list_round_trips(self, tmp_path):
        path = tmp_path / "repositories.json"

        save_repositories([], path)

        assert load_repositories(path) == []

    def test_missing_store_raises(self, tmp_path):
        with pytest.raises(ConfigurationMissingError):
            load_repositories(tmp_path / "missing.json")

    def test_missing_store_is_a_file_not_found_error(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_repositories(tmp_path / "missing.json")

    def test_malformed_store_raises(self, tmp_path):
        path = tmp_path / "repositories.json"
        path.write_text('{"name": "not a list"}')

        with pytest.raises(ConfigurationInvalidError):
            load_repositories(path)

    def test_none_path_is_rejected(self):
        with pytest.raises(ValueError):
            load_repositories(None)
        with pytest.raises(ValueError):
            save_repositories([], None)
