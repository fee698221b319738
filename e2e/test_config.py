"""Settings tests — environment parsing without touching os.environ."""

import pytest

from config import DEFAULT_REASONING_MODEL, Settings, parse_project_repos


class TestSettings:
    def test_defaults_from_empty_environment(self):
        settings = Settings.from_env({})
        assert settings.db_path == "guardian.db"
        assert settings.max_verify_attempts == 3
        assert settings.hydrate_limit == 20
        assert settings.ingest_token is None
        assert settings.reasoning_model == DEFAULT_REASONING_MODEL
        assert settings.allowed_origins == ["http://localhost:3000"]

    def test_values_from_environment(self):
        settings = Settings.from_env({
            "GUARDIAN_DB_PATH": "/data/g.db",
            "GUARDIAN_STEP_TIMEOUT_SECONDS": "12.5",
            "GUARDIAN_MAX_VERIFY_ATTEMPTS": "5",
            "GUARDIAN_INGEST_TOKEN": "tok",
            "GUARDIAN_PROJECT_REPOS": "shop=acme/shop-api",
            "ALLOWED_ORIGINS": "https://a.example, https://b.example",
        })
        assert settings.db_path == "/data/g.db"
        assert settings.step_timeout_seconds == 12.5
        assert settings.max_verify_attempts == 5
        assert settings.ingest_token == "tok"
        assert settings.repo_for_project("shop") == "acme/shop-api"
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]

    def test_bad_number_raises(self):
        with pytest.raises(ValueError, match="GUARDIAN_MAX_VERIFY_ATTEMPTS"):
            Settings.from_env({"GUARDIAN_MAX_VERIFY_ATTEMPTS": "three"})

    def test_project_for_repo_is_case_insensitive(self):
        settings = Settings(project_repos={"shop": "acme/shop-api"})
        assert settings.project_for_repo("Acme/Shop-API") == "shop"
        assert settings.project_for_repo("acme/other") is None


class TestProjectRepos:
    def test_parses_entries(self):
        assert parse_project_repos("a=acme/api, b = acme/web") == {"a": "acme/api", "b": "acme/web"}

    def test_skips_malformed_entries(self):
        assert parse_project_repos("a=acme/api,broken,c=norepo,") == {"a": "acme/api"}

    def test_empty(self):
        assert parse_project_repos("") == {}
