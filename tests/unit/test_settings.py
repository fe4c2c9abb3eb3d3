"""Unit tests for the settings schema, store and environment defaults."""

import json

import pytest

from prwatch.config import env_default_settings, load_app_config
from prwatch.config.schema import Settings, sanitize, validate_update
from prwatch.config.settings_store import SettingsStore


def test_defaults():
    settings = Settings()

    assert settings.poll_interval == 60
    assert settings.sync_mode == "auto"
    assert settings.parallel_reviews == 3
    assert settings.max_review_versions == 10
    assert settings.context_versions == 2
    assert settings.to_public_dict()["onlyOwnPRs"] is False


def test_valid_update_is_applied():
    new_settings, errors = validate_update(Settings(), {"pollInterval": 120, "repoPatterns": ["acme/widgets"]})

    assert errors == []
    assert new_settings is not None
    assert new_settings.poll_interval == 120
    assert new_settings.repo_patterns == ["acme/widgets"]


def test_update_reports_every_invalid_field():
    new_settings, errors = validate_update(
        Settings(),
        {"pollInterval": 5, "parallelReviews": 11, "syncMode": "sometimes", "bogus": 1, "githubUsername": "me"},
    )

    assert new_settings is None
    fields = {error.field for error in errors}
    assert fields == {"pollInterval", "parallelReviews", "syncMode", "bogus"}
    assert any(e.message == "Unknown setting: bogus" for e in errors)


@pytest.mark.parametrize(
    "updates",
    [
        {"contextVersions": -1},
        {"contextVersions": 11},
        {"maxReviewVersions": 0},
        {"maxReviewVersions": 101},
        {"cleanupIntervalHours": 0},
        {"cleanupAgeDays": 0},
        {"pollInterval": 3601},
        {"pollInterval": "60"},
        {"onlyOwnPRs": "yes"},
    ],
)
def test_out_of_range_values_are_rejected(updates):
    new_settings, errors = validate_update(Settings(), updates)

    assert new_settings is None
    assert [e.field for e in errors] == list(updates)


def test_invalid_regex_pattern_is_rejected():
    _, errors = validate_update(Settings(), {"repoPatterns": ["acme/widgets", "/acme/(unclosed/"]})

    assert len(errors) == 1
    assert errors[0].field == "repoPatterns"
    assert errors[0].message.startswith("Invalid regex pattern: /acme/(unclosed/")


@pytest.mark.parametrize("pattern", ["github.com/acme/widgets", "widgets", "acme/"])
def test_exact_pattern_must_be_owner_and_name(pattern):
    new_settings, errors = validate_update(Settings(), {"repoPatterns": [pattern, "acme/gadgets"]})

    assert new_settings is None
    assert [e.field for e in errors] == ["repoPatterns"]
    assert errors[0].message.startswith(f"Invalid repository name: {pattern}")


def test_non_object_update_is_rejected():
    new_settings, errors = validate_update(Settings(), ["pollInterval"])

    assert new_settings is None
    assert errors[0].field == "settings"


def test_sanitize_keeps_valid_fields():
    settings, errors = sanitize(Settings(), {"pollInterval": 1, "parallelReviews": 5})

    assert settings.parallel_reviews == 5
    assert settings.poll_interval == 60
    assert [e.field for e in errors] == ["pollInterval"]


def test_store_update_persists(tmp_path):
    path = tmp_path / ".pr-settings.json"
    store = SettingsStore(path, Settings())

    assert store.update({"syncMode": "manual"}) == []
    assert store.current.sync_mode == "manual"
    assert json.loads(path.read_text())["syncMode"] == "manual"

    reloaded = SettingsStore(path, Settings())
    assert reloaded.load().sync_mode == "manual"


def test_store_rejected_update_changes_nothing(tmp_path):
    path = tmp_path / ".pr-settings.json"
    store = SettingsStore(path, Settings())

    errors = store.update({"syncMode": "manual", "pollInterval": 1})

    assert [e.field for e in errors] == ["pollInterval"]
    assert store.current.sync_mode == "auto"
    assert not path.exists()


def test_store_reset_restores_defaults(tmp_path):
    defaults = Settings(pollInterval=30)
    store = SettingsStore(tmp_path / ".pr-settings.json", defaults)
    store.update({"pollInterval": 900})

    assert store.reset().poll_interval == 30


def test_store_load_tolerates_corrupt_file(tmp_path):
    path = tmp_path / ".pr-settings.json"
    path.write_text("[[[")

    store = SettingsStore(path, Settings())

    assert store.load() == Settings()


def test_store_load_drops_invalid_saved_fields(tmp_path):
    path = tmp_path / ".pr-settings.json"
    path.write_text(json.dumps({"pollInterval": 2, "parallelReviews": 4}))

    settings = SettingsStore(path, Settings()).load()

    assert settings.poll_interval == 60
    assert settings.parallel_reviews == 4


def test_env_defaults():
    env = {
        "GITHUB_USERNAME": " octocat ",
        "REPOS": "acme/widgets, /acme\\/.*/ ,",
        "POLL_INTERVAL": "120",
        "SYNC_MODE": "MANUAL",
        "ONLY_OWN_PRS": "true",
        "PARALLEL_REVIEWS": "not-a-number",
        "MAX_REVIEW_VERSIONS": "500",
    }

    settings = env_default_settings(env)

    assert settings.github_username == "octocat"
    assert settings.repo_patterns == ["acme/widgets", "/acme\\/.*/"]
    assert settings.poll_interval == 120
    assert settings.sync_mode == "manual"
    assert settings.only_own_prs is True
    assert settings.parallel_reviews == 3
    assert settings.max_review_versions == 10


def test_load_app_config(tmp_path):
    config = load_app_config(
        {
            "WORK_DIR": str(tmp_path),
            "WEB_PORT": "4000",
            "REVIEW_COMMAND": "my-reviewer --quiet",
            "REVIEW_TIMEOUT": "90",
        }
    )

    assert config.paths.root == tmp_path.resolve()
    assert config.paths.ledger_file.name == ".pr-state.json"
    assert config.api_port == 4000
    assert config.review_command == ("my-reviewer", "--quiet")
    assert config.review_timeout_s == 90.0
    assert config.clone_url_template == "https://github.com/{repo}.git"
