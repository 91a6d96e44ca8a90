"""Platform-wide LLM configuration: models, guardrails, prompts, industry packs.

Defaults live here; an operator may override any subset with a JSON file
(``RENDER_PLATFORM_CONFIG_PATH``). The file is validated before use so a
typo never reaches a generation call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

logger = logging.getLogger(__name__)

DEFAULT_EXTRA_SYSTEM_PREAMBLE = "\n".join(
    [
        "You are producing an estimate for legitimate service work.",
        "Do not provide instructions for wrongdoing or unsafe activity.",
        "Do not request or expose sensitive personal data beyond what is needed for the quote.",
        "If the submission is ambiguous, ask clarifying questions instead of guessing.",
    ]
)

DEFAULT_QUOTE_ESTIMATOR_SYSTEM = "\n".join(
    [
        "You are an expert estimator for service work based on photos and customer notes.",
        "Be conservative: return a realistic RANGE, not a single number.",
        "If photos are insufficient or ambiguous, set confidence low and inspection_required true.",
        "Do not invent brand/model/year; ask questions instead.",
        "Return ONLY valid JSON matching the provided schema.",
    ]
)

DEFAULT_RENDER_PROMPT_PREAMBLE = "\n".join(
    [
        "You are generating a safe, non-violent, non-sexual concept render for legitimate service work.",
        "Do NOT add text, watermarks, logos, brand marks, or UI overlays.",
        "No nudity, no explicit content, no weapons, no illegal activity.",
    ]
)

DEFAULT_RENDER_PROMPT_TEMPLATE = "\n".join(
    [
        "{renderPromptPreamble}",
        "Generate a realistic 'after' concept rendering based on the customer's photos.",
        "Do NOT add text or watermarks.",
        "Style: {style}",
        "{serviceTypeLine}",
        "{summaryLine}",
        "{customerNotesLine}",
        "{tenantRenderNotesLine}",
    ]
)

DEFAULT_RENDER_STYLE_PRESETS: dict[str, str] = {
    "photoreal": "photorealistic, clean lighting, product photography feel",
    "clean_oem": "clean OEM refresh, factory-correct look, neutral lighting, product photo feel",
    "custom": "custom show-style upgrade, premium materials, dramatic but tasteful lighting",
}

DEFAULT_BLOCKED_TOPICS = (
    "credit card",
    "social security",
    "ssn",
    "password",
    "explosive",
    "bomb",
    "weapon",
)


@dataclass(frozen=True)
class IndustryPack:
    key: str
    extra_system_preamble: str = ""
    quote_estimator_system: str = ""
    render_prompt_preamble: str = ""

    @property
    def is_empty(self) -> bool:
        return not (
            self.extra_system_preamble.strip()
            or self.quote_estimator_system.strip()
            or self.render_prompt_preamble.strip()
        )


DEFAULT_INDUSTRY_PACKS: dict[str, IndustryPack] = {
    "marine": IndustryPack(
        key="marine",
        extra_system_preamble=(
            "You are producing an estimate for legitimate marine service work.\n"
            "Assume salt + sun exposure can accelerate wear; ask clarifying questions if unclear."
        ),
        render_prompt_preamble="Show marine-grade materials and finishes suited to salt and sun exposure.",
    ),
    "auto": IndustryPack(
        key="auto",
        extra_system_preamble=(
            "You are producing an estimate for legitimate automotive service work.\n"
            "Pay attention to OEM fitment and safety-related trim constraints; ask clarifying questions if needed."
        ),
        render_prompt_preamble="Keep OEM fitment and factory trim lines intact.",
    ),
    "motorcycle": IndustryPack(
        key="motorcycle",
        extra_system_preamble=(
            "You are producing an estimate for legitimate motorcycle service work.\n"
            "Pay attention to weather exposure, UV, and seam durability; ask clarifying questions if unclear."
        ),
        render_prompt_preamble="Show weather-resistant materials with clean, durable seams.",
    ),
}


@dataclass(frozen=True)
class PlatformLlmConfig:
    estimator_model: str = "gpt-4o-mini"
    qa_model: str = "gpt-4o-mini"
    render_model: str = "gpt-image-1"
    extra_system_preamble: str = DEFAULT_EXTRA_SYSTEM_PREAMBLE
    quote_estimator_system: str = DEFAULT_QUOTE_ESTIMATOR_SYSTEM
    render_prompt_preamble: str = DEFAULT_RENDER_PROMPT_PREAMBLE
    render_prompt_template: str = DEFAULT_RENDER_PROMPT_TEMPLATE
    render_style_presets: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_RENDER_STYLE_PRESETS))
    blocked_topics: tuple[str, ...] = DEFAULT_BLOCKED_TOPICS
    max_qa_questions: int = 3
    max_output_tokens: int = 1200
    daily_render_cap: int = 0
    industry_packs: dict[str, IndustryPack] = field(default_factory=lambda: dict(DEFAULT_INDUSTRY_PACKS))

    def industry_pack(self, industry_key: str | None) -> IndustryPack | None:
        key = str(industry_key or "").strip().lower()
        if not key:
            return None
        pack = self.industry_packs.get(key)
        if pack is None or pack.is_empty:
            return None
        return pack

    def style_text(self, style_key: str) -> str:
        return self.render_style_presets.get(style_key) or self.render_style_presets.get("photoreal", "")


_STR = {"type": "string"}

PLATFORM_CONFIG_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "version": {"type": "integer", "minimum": 1},
        "models": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"estimator_model": _STR, "qa_model": _STR, "render_model": _STR},
        },
        "prompts": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "extra_system_preamble": _STR,
                "quote_estimator_system": _STR,
                "render_prompt_preamble": _STR,
                "render_prompt_template": _STR,
                "render_style_presets": {
                    "type": "object",
                    "additionalProperties": {"type": "string", "minLength": 1},
                },
                "industry_packs": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "extra_system_preamble": _STR,
                            "quote_estimator_system": _STR,
                            "render_prompt_preamble": _STR,
                        },
                    },
                },
            },
        },
        "guardrails": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "blocked_topics": {"type": "array", "items": {"type": "string"}},
                "max_qa_questions": {"type": "integer", "minimum": 1, "maximum": 10},
                "max_output_tokens": {"type": "integer", "minimum": 200, "maximum": 4000},
                "daily_render_cap": {"type": "integer", "minimum": 0},
            },
        },
    },
}


def platform_config_from_dict(raw: dict[str, Any]) -> PlatformLlmConfig:
    try:
        validate(instance=raw, schema=PLATFORM_CONFIG_SCHEMA)
    except ValidationError as exc:
        path = ".".join(str(x) for x in exc.absolute_path) or "<root>"
        raise RuntimeError(f"invalid platform llm config at {path}: {exc.message}") from exc

    base = PlatformLlmConfig()
    models = raw.get("models") or {}
    prompts = raw.get("prompts") or {}
    guardrails = raw.get("guardrails") or {}

    presets = dict(base.render_style_presets)
    presets.update({str(k).strip().lower(): v for k, v in (prompts.get("render_style_presets") or {}).items()})

    packs = dict(base.industry_packs)
    for key, pack in (prompts.get("industry_packs") or {}).items():
        normalized = str(key).strip().lower()
        packs[normalized] = IndustryPack(
            key=normalized,
            extra_system_preamble=str(pack.get("extra_system_preamble", "")),
            quote_estimator_system=str(pack.get("quote_estimator_system", "")),
            render_prompt_preamble=str(pack.get("render_prompt_preamble", "")),
        )

    changes: dict[str, Any] = {
        "render_style_presets": presets,
        "industry_packs": packs,
    }
    for name in ("estimator_model", "qa_model", "render_model"):
        if str(models.get(name, "")).strip():
            changes[name] = str(models[name]).strip()
    # An empty prompt in the file means "use the platform default".
    for name in ("extra_system_preamble", "quote_estimator_system", "render_prompt_preamble", "render_prompt_template"):
        if str(prompts.get(name, "")).strip():
            changes[name] = str(prompts[name])
    if "blocked_topics" in guardrails:
        changes["blocked_topics"] = tuple(x.strip() for x in guardrails["blocked_topics"] if x.strip())
    for name in ("max_qa_questions", "max_output_tokens", "daily_render_cap"):
        if name in guardrails:
            changes[name] = int(guardrails[name])
    return replace(base, **changes)


def load_platform_config(path: str | None) -> PlatformLlmConfig:
    if not path:
        return PlatformLlmConfig()
    file_path = Path(path)
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RuntimeError(f"platform llm config not found: {file_path}") from exc
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"platform llm config is not valid JSON: {file_path}") from exc
    if not isinstance(raw, dict):
        raise RuntimeError(f"platform llm config must be a JSON object: {file_path}")
    config = platform_config_from_dict(raw)
    logger.info(
        "platform llm config loaded path=%s render_model=%s industry_packs=%s",
        file_path,
        config.render_model,
        ",".join(sorted(config.industry_packs)),
    )
    return config
