"""
Chat model registry and internal cost model.

Costs are USD per 1M tokens as actually billed by the provider. SERVER-ONLY:
never return these numbers from a user-facing endpoint.

Token counts are estimated from text length (ceil(len / 4)). The same
estimator is used for the admission estimate and for settlement; the
admission estimate is stored beside the settled cost on every
UsageCostRecord so drift between the two stays visible.
"""
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

PROVIDER_OPENAI_COMPAT = "openai_compat"
PROVIDER_GEMINI = "gemini"


@dataclass(frozen=True)
class ModelDefinition:
    key: str
    provider_model_id: str
    provider: str
    tier: str  # "economy" | "standard" | "premium"
    input_per_million: float
    output_per_million: float


DEFAULT_MODELS: dict[str, ModelDefinition] = {
    m.key: m
    for m in (
        ModelDefinition("seed-1-6-flash", "seed-1-6-flash-250715", PROVIDER_OPENAI_COMPAT, "economy", 0.06, 0.30),
        ModelDefinition("deepseek-v3-2", "deepseek-v3-2-251201", PROVIDER_OPENAI_COMPAT, "economy", 0.084, 0.168),
        ModelDefinition("glm-4", "glm-4-7-251222", PROVIDER_OPENAI_COMPAT, "economy", 0.12, 0.60),
        ModelDefinition("gemini-2-0-flash", "gemini-2.0-flash", PROVIDER_GEMINI, "economy", 0.10, 0.40),
        ModelDefinition("kimi-k2", "kimi-k2-250905", PROVIDER_OPENAI_COMPAT, "standard", 0.30, 1.44),
        ModelDefinition("seed-1-8", "seed-1-8-251228", PROVIDER_OPENAI_COMPAT, "standard", 0.15, 1.20),
        ModelDefinition("deepseek-r1", "deepseek-r1-250528", PROVIDER_OPENAI_COMPAT, "premium", 0.33, 1.314),
        ModelDefinition("gpt-5-2", "openai/gpt-5.2", PROVIDER_OPENAI_COMPAT, "premium", 1.75, 14.00),
        ModelDefinition("grok-4", "x-ai/grok-4", PROVIDER_OPENAI_COMPAT, "premium", 3.00, 15.00),
    )
}


class ModelCatalog:
    """Lookup by catalog key or by provider model id."""

    def __init__(self, models: Mapping[str, ModelDefinition] | None = None):
        self._models = dict(models if models is not None else DEFAULT_MODELS)
        self._by_provider_id = {m.provider_model_id: m for m in self._models.values()}

    def resolve(self, model: str) -> ModelDefinition | None:
        return self._models.get(model) or self._by_provider_id.get(model)

    def keys(self) -> list[str]:
        return list(self._models)


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def estimate_messages_tokens(contents: Iterable[str]) -> int:
    return sum(estimate_tokens(c) for c in contents)


def chat_cost_usd(model: ModelDefinition, input_tokens: int, output_tokens: int) -> float:
    return (input_tokens * model.input_per_million + output_tokens * model.output_per_million) / 1_000_000
