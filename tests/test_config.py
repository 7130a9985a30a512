"""Tests for configuration and API key resolution."""

import os

import pytest

from leadflow.config import NO_KEY_PROVIDERS, STANDARD_ENV_VAR_NAMES, ApifySettings, AppSettings, LLMSettings, PipelineSettings, ServerSettings, WorkerSettings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove API keys and LEADFLOW_ settings picked up from the host."""
    for var in list(os.environ.keys()):
        if "API_KEY" in var or var.startswith("LEADFLOW_") or var == "APIFY_TOKEN":
            monkeypatch.delenv(var, raising=False)


class TestProviderNames:
    def test_google_accepts_two_names(self):
        assert STANDARD_ENV_VAR_NAMES["google"] == ["GEMINI_API_KEY", "GOOGLE_API_KEY"]

    def test_ollama_needs_no_key(self):
        assert "ollama" in NO_KEY_PROVIDERS
        assert "openai" not in NO_KEY_PROVIDERS


class TestApiKeyResolution:
    """Test API key resolution priority logic."""

    def test_generic_override_takes_priority(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_LLM_API_KEY", "generic-key")
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("LEADFLOW_LLM_OPENAI_API_KEY", "prefixed-key")

        assert LLMSettings().get_api_key_for_provider() == "generic-key"

    def test_standard_name_over_prefixed(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "standard-key")
        monkeypatch.setenv("LEADFLOW_LLM_OPENAI_API_KEY", "prefixed-key")

        assert LLMSettings().get_api_key_for_provider() == "standard-key"

    def test_prefixed_fallback(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_LLM_PROVIDER", "anthropic")
        monkeypatch.setenv("LEADFLOW_LLM_ANTHROPIC_API_KEY", "prefixed-key")

        settings = LLMSettings()
        assert settings.provider == "anthropic"
        assert settings.get_api_key_for_provider() == "prefixed-key"

    def test_google_uses_gemini_name_first(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_LLM_PROVIDER", "google")
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-key")
        monkeypatch.setenv("GOOGLE_API_KEY", "google-key")

        assert LLMSettings().get_api_key_for_provider() == "gemini-key"

    def test_ollama_no_key_required(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_LLM_PROVIDER", "ollama")

        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert not settings.requires_api_key()

    def test_missing_key(self):
        settings = LLMSettings()
        assert settings.get_api_key_for_provider() is None
        assert settings.requires_api_key()


class TestApifySettings:
    def test_token_from_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_APIFY_API_TOKEN", "prefixed-token")
        monkeypatch.setenv("APIFY_TOKEN", "plain-token")

        assert ApifySettings().get_api_token() == "prefixed-token"

    def test_token_falls_back_to_apify_token(self, monkeypatch):
        monkeypatch.setenv("APIFY_TOKEN", "plain-token")

        assert ApifySettings().get_api_token() == "plain-token"

    def test_no_token(self):
        assert ApifySettings().get_api_token() is None

    def test_token_is_not_echoed(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_APIFY_API_TOKEN", "secret-token")

        assert "secret-token" not in repr(ApifySettings())


class TestDefaults:
    def test_worker_defaults(self):
        worker = WorkerSettings()
        assert worker.enabled is True
        assert worker.poll_interval == 5.0
        assert worker.max_concurrent_tasks == 2
        assert worker.max_retries == 3
        assert worker.stale_timeout_minutes == 5.0
        assert worker.stalled_local_timeout_minutes == 45.0

    def test_pipeline_defaults(self):
        pipeline = PipelineSettings()
        assert pipeline.max_queries == 3
        assert pipeline.query_timeout == 600.0
        assert pipeline.fanout_timeout == 900.0
        assert pipeline.enrichment_timeout == 1800.0
        assert pipeline.search_buffer == 30
        assert pipeline.accept_phone_contact is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_WORKER_MAX_CONCURRENT_TASKS", "4")
        monkeypatch.setenv("LEADFLOW_PIPELINE_ACCEPT_PHONE_CONTACT", "true")

        assert WorkerSettings().max_concurrent_tasks == 4
        assert PipelineSettings().accept_phone_contact is True

    def test_log_format_choices(self, monkeypatch):
        assert ServerSettings().log_format == "json"
        monkeypatch.setenv("LEADFLOW_SERVER_LOG_FORMAT", "console")
        assert ServerSettings().log_format == "console"
        monkeypatch.setenv("LEADFLOW_SERVER_LOG_FORMAT", "xml")
        with pytest.raises(ValueError):
            ServerSettings()

    def test_invalid_concurrency_rejected(self, monkeypatch):
        monkeypatch.setenv("LEADFLOW_WORKER_MAX_CONCURRENT_TASKS", "0")

        with pytest.raises(ValueError):
            WorkerSettings()


class TestPaths:
    def test_db_path_override(self, tmp_path):
        settings = AppSettings(server=ServerSettings(db_path=str(tmp_path / "custom.db")))
        assert settings.get_db_path() == tmp_path / "custom.db"

    def test_default_db_path_in_config_dir(self):
        assert AppSettings().get_db_path().name == "tasks.db"

    def test_results_dir_created(self, tmp_path):
        target = tmp_path / "exports" / "leads"
        settings = AppSettings(server=ServerSettings(results_dir=str(target)))

        assert settings.get_results_dir() == target
        assert target.is_dir()

    def test_save_excludes_secrets(self, tmp_path, monkeypatch):
        config_file = tmp_path / "config.json"
        monkeypatch.setattr("leadflow.config.CONFIG_FILE", config_file)
        monkeypatch.setenv("LEADFLOW_LLM_API_KEY", "sk-secret")
        monkeypatch.setenv("LEADFLOW_APIFY_API_TOKEN", "apify-secret")

        AppSettings(llm=LLMSettings(), apify=ApifySettings()).save()

        text = config_file.read_text()
        assert "sk-secret" not in text
        assert "apify-secret" not in text
        assert '"search_actor"' in text
