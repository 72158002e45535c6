"""Supported-model catalog and model alias resolution."""

from __future__ import annotations

DEFAULT_MODEL = "glm-5"

SUPPORTED_MODELS: list[dict] = [
    {"id": "glm-4.6", "name": "GLM-4.6"},
    {"id": "glm-4.7", "name": "GLM-4.7"},
    {"id": "glm-5", "name": "GLM-5"},
    {"id": "deepseek-v3.2-chat", "name": "DeepSeek-V3.2"},
    {"id": "qwen3-coder-plus", "name": "Qwen3-Coder-Plus"},
    {"id": "kimi-k2", "name": "Kimi-K2"},
    {"id": "kimi-k2-thinking", "name": "Kimi-K2-Thinking"},
    {"id": "kimi-k2.5", "name": "Kimi-K2.5"},
    {"id": "minimax-m2.5", "name": "MiniMax-M2.5"},
    {"id": "qwen-vl-max", "name": "Qwen-VL-Max"},
]

# Clients hard-wired to Anthropic model names get the default backend model.
MODEL_ALIASES: dict[str, str] = {
    "claude-opus-4-6": DEFAULT_MODEL,
    "claude-opus-4": DEFAULT_MODEL,
    "claude-sonnet-4-6": DEFAULT_MODEL,
    "claude-sonnet-4": DEFAULT_MODEL,
    "claude-haiku-4-5": DEFAULT_MODEL,
    "claude-haiku-4": DEFAULT_MODEL,
    "opus-4": DEFAULT_MODEL,
    "sonnet-4": DEFAULT_MODEL,
    "haiku-4": DEFAULT_MODEL,
}


class ModelRegistry:
    """Catalog + alias table, optionally extended from config."""

    def __init__(
        self,
        aliases: dict[str, str] | None = None,
        catalog: list[dict] | None = None,
    ) -> None:
        self.aliases = {**MODEL_ALIASES, **(aliases or {})}
        self.catalog = list(catalog) if catalog else list(SUPPORTED_MODELS)

    def resolve(self, model: str) -> str:
        """Map an alias to its target; unknown names pass through unchanged."""
        return self.aliases.get(model, model)

    def is_known(self, model: str) -> bool:
        target = self.resolve(model)
        return any(m["id"] == target for m in self.catalog)

    def model_ids(self) -> list[str]:
        return [m["id"] for m in self.catalog]
