"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

SUPPORTED_LANGUAGES = ("en", "pt")

# Call sites that talk to the generation engine; each gets its own tuning.
CALL_SITES = (
    "summary",
    "briefing",
    "dispute_points",
    "response_summary",
    "context_summary",
    "fact_list",
    "context_analysis",
    "sanitize",
    "verdict",
)


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class CallSettings:
    temperature: float
    max_tokens: int


@dataclass
class PromptPair:
    system: str
    user: str


@dataclass
class PromptsConfig:
    """Templates, labels and fallback strings for one language."""

    summary: PromptPair
    briefing: PromptPair
    dispute_points: PromptPair
    response_summary: PromptPair
    context_summary: PromptPair
    fact_list: PromptPair
    sanitize: PromptPair
    verdict: PromptPair
    image_instruction: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    fallbacks: dict[str, str] = field(default_factory=dict)


@dataclass
class AttachmentsConfig:
    max_file_bytes: int
    max_text_chars: int
    allowed_mime_types: list[str] = field(default_factory=list)


@dataclass
class DefaultsConfig:
    provider: str
    language: str
    workflow: str
    visibility_mode: str
    data_dir: Path
    output_dir: Path
    allow_unassessed_judgment: bool = False


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    generation: dict[str, CallSettings]
    attachments: AttachmentsConfig
    prompts: dict[str, PromptsConfig]
    context_prompt: PromptPair
    available_providers: set[str] = field(default_factory=set)

    def prompts_for(self, language: str) -> PromptsConfig:
        """Prompts for a session language, falling back to English."""
        return self.prompts.get(language) or self.prompts["en"]


def _pair(raw: dict) -> PromptPair:
    return PromptPair(system=str(raw["system"]), user=str(raw["user"]))


def _load_prompts(raw: dict) -> PromptsConfig:
    return PromptsConfig(
        summary=_pair(raw["summary"]),
        briefing=_pair(raw["briefing"]),
        dispute_points=_pair(raw["dispute_points"]),
        response_summary=_pair(raw["response_summary"]),
        context_summary=_pair(raw["context_summary"]),
        fact_list=_pair(raw["fact_list"]),
        sanitize=_pair(raw["sanitize"]),
        verdict=_pair(raw["verdict"]),
        image_instruction=str(raw.get("image_instruction", "")),
        labels={k: str(v) for k, v in raw.get("labels", {}).items()},
        fallbacks={k: str(v) for k, v in raw.get("fallbacks", {}).items()},
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError if a call
    site has no generation tuning or English prompts are absent.
    Logs missing API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        provider=str(defaults_raw["provider"]),
        language=str(defaults_raw.get("language", "en")),
        workflow=str(defaults_raw.get("workflow", "simple")),
        visibility_mode=str(defaults_raw.get("visibility_mode", "open")),
        data_dir=Path(defaults_raw["data_dir"]),
        output_dir=Path(defaults_raw["output_dir"]),
        allow_unassessed_judgment=bool(defaults_raw.get("allow_unassessed_judgment", False)),
    )

    generation: dict[str, CallSettings] = {}
    for site, site_raw in raw["generation"].items():
        generation[site] = CallSettings(
            temperature=float(site_raw["temperature"]),
            max_tokens=int(site_raw["max_tokens"]),
        )
    missing_sites = [s for s in CALL_SITES if s not in generation]
    if missing_sites:
        raise ValueError(f"Missing generation settings for: {', '.join(missing_sites)}")

    attachments_raw = raw.get("attachments", {})
    attachments = AttachmentsConfig(
        max_file_bytes=int(attachments_raw.get("max_file_bytes", 10 * 1024 * 1024)),
        max_text_chars=int(attachments_raw.get("max_text_chars", 5000)),
        allowed_mime_types=list(attachments_raw.get("allowed_mime_types", [])),
    )

    prompts_raw = raw["prompts"]
    prompts = {
        lang: _load_prompts(prompts_raw[lang])
        for lang in SUPPORTED_LANGUAGES
        if lang in prompts_raw
    }
    if "en" not in prompts:
        raise ValueError("English prompts are required")

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        generation=generation,
        attachments=attachments,
        prompts=prompts,
        context_prompt=_pair(raw["context_analysis"]),
        available_providers=available_providers,
    )
