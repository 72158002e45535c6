"""Tests for ModelRegistry."""

from iflow_bridge.core.models import DEFAULT_MODEL, MODEL_ALIASES, SUPPORTED_MODELS, ModelRegistry


def test_builtin_aliases_resolve_to_default():
    registry = ModelRegistry()
    for alias in MODEL_ALIASES:
        assert registry.resolve(alias) == DEFAULT_MODEL


def test_unknown_passes_through():
    assert ModelRegistry().resolve("gpt-4o") == "gpt-4o"


def test_config_aliases_merge_over_builtins():
    registry = ModelRegistry(aliases={"claude-opus-4": "kimi-k2", "fast": "glm-4.6"})
    assert registry.resolve("claude-opus-4") == "kimi-k2"
    assert registry.resolve("fast") == "glm-4.6"
    assert registry.resolve("claude-haiku-4") == DEFAULT_MODEL


def test_catalog():
    registry = ModelRegistry()
    assert registry.model_ids() == [m["id"] for m in SUPPORTED_MODELS]
    assert registry.is_known("glm-5")
    assert registry.is_known("sonnet-4")
    assert not registry.is_known("gpt-4o")


def test_catalog_override():
    registry = ModelRegistry(catalog=[{"id": "only-model", "name": "Only"}])
    assert registry.model_ids() == ["only-model"]
