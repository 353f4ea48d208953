from pathlib import Path

import pytest

from devsentinel.config import Provider, config_from_dict, load_config


def test_load_config_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DEVSENTINEL_MODEL", raising=False)
    config = load_config()
    assert config.profile_name == "default"
    assert config.pipeline.apply_patches is True
    assert config.llm.provider is Provider.OPENROUTER
    assert ".js" in config.scan.extensions
    assert "node_modules" in config.scan.ignored_dirs


def test_load_config_explicit_missing_path_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_load_config_from_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.delenv("DEVSENTINEL_MODEL", raising=False)
    path = tmp_path / "devsentinel.yaml"
    path.write_text(
        "profile_name: ci\n"
        "scan:\n"
        "  extensions: [js, .PY]\n"
        "pipeline:\n"
        "  validate: false\n"
        "  min_patch_severity: HIGH\n"
        "llm:\n"
        "  provider: groq\n"
        "  model: llama3-70b\n"
        "  timeout_ms: 5000\n"
    )
    config = load_config(path)
    assert config.profile_name == "ci"
    assert config.scan.extensions == [".js", ".py"]
    assert config.pipeline.validate is False
    assert config.pipeline.min_patch_severity == "high"
    assert config.llm.provider is Provider.GROQ
    assert config.llm.api_key == "gsk-test"
    assert config.llm.timeout_seconds == 5.0


def test_config_validation_errors():
    with pytest.raises(ValueError, match="llm.provider"):
        config_from_dict({"llm": {"provider": "nonexistent"}})
    with pytest.raises(ValueError, match="min_patch_severity"):
        config_from_dict({"pipeline": {"min_patch_severity": "critical"}})
    with pytest.raises(ValueError, match="max_workers"):
        config_from_dict({"scan": {"max_workers": 0}})


def test_azure_reads_endpoint_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://example.openai.azure.com")
    monkeypatch.setenv("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt4o")
    config = config_from_dict({"llm": {"provider": "azure"}})
    assert config.llm.endpoint == "https://example.openai.azure.com"
    assert config.llm.deployment == "gpt4o"
