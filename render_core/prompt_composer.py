"""Layered prompt composition for the render and estimate workloads.

Both composers are pure: they read only their arguments and return the
final text together with a record of which layers fired.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from render_core.platform_config import IndustryPack, PlatformLlmConfig
from render_core.repositories.tenants import TenantSettings, normalize_style_key

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z][A-Za-z0-9_]*)\}")
_BLANK_RUN_RE = re.compile(r"\n{3,}")

AI_MODES = ("assessment_only", "range", "fixed")

PRICING_MODEL_HINTS: dict[str, str] = {
    "flat_per_job": "Pricing methodology hint: think a single job total.",
    "hourly_plus_materials": "Pricing methodology hint: think hours and material costs/markup.",
    "per_unit": "Pricing methodology hint: estimate per-unit and multiply.",
    "packages": "Pricing methodology hint: think Basic/Standard/Premium tiers.",
    "line_items": "Pricing methodology hint: think add-ons; base service + optional items.",
    "inspection_only": "Pricing methodology hint: prefer inspection_required=true.",
    "assessment_fee": "Pricing methodology hint: assessment/diagnostic fee model.",
}


def _clean(value: Any) -> str:
    return str(value or "").strip()


@dataclass(frozen=True)
class TenantLayer:
    style_key: str = "photoreal"
    render_notes: str = ""
    render_prompt_override: str = ""
    estimator_prompt_override: str = ""

    @classmethod
    def from_settings(cls, settings: TenantSettings | None) -> "TenantLayer":
        if settings is None:
            return cls()
        return cls(
            style_key=normalize_style_key(settings.rendering_style),
            render_notes=_clean(settings.rendering_notes),
            render_prompt_override=_clean(settings.render_prompt_override),
            estimator_prompt_override=_clean(settings.estimator_prompt_override),
        )


@dataclass(frozen=True)
class RenderInputs:
    service_type: str = ""
    summary: str = ""
    customer_notes: str = ""

    @classmethod
    def from_quote(cls, quote: dict[str, Any]) -> "RenderInputs":
        quote_input = quote.get("input") or {}
        output = quote.get("output") or {}
        ctx = quote_input.get("customer_context") or {}
        return cls(
            service_type=_clean(ctx.get("service_type")),
            summary=_clean(output.get("summary")),
            customer_notes=_clean(ctx.get("notes")),
        )


@dataclass(frozen=True)
class PricingPolicy:
    pricing_enabled: bool = False
    ai_mode: str = "assessment_only"
    pricing_model: str = ""

    @classmethod
    def from_settings(cls, settings: TenantSettings | None) -> "PricingPolicy":
        if settings is None:
            return cls()
        return cls(
            pricing_enabled=bool(settings.pricing_enabled),
            ai_mode=_clean(settings.ai_mode),
            pricing_model=_clean(settings.pricing_model),
        )

    def normalized(self) -> "PricingPolicy":
        if not self.pricing_enabled:
            return PricingPolicy(pricing_enabled=False, ai_mode="assessment_only", pricing_model="")
        mode = self.ai_mode.lower()
        return PricingPolicy(
            pricing_enabled=True,
            ai_mode=mode if mode in AI_MODES else "range",
            pricing_model=self.pricing_model.lower(),
        )


@dataclass(frozen=True)
class LayersFired:
    platform_base: bool = True
    industry_key: str = ""
    industry_applied: bool = False
    tenant_custom_prompt: bool = False
    tenant_style: str = ""
    tenant_notes: bool = False
    pricing_mode: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "platform_base": self.platform_base,
            "industry_key": self.industry_key,
            "industry_applied": self.industry_applied,
            "tenant_custom_prompt": self.tenant_custom_prompt,
            "tenant_style": self.tenant_style,
            "tenant_notes": self.tenant_notes,
            "pricing_mode": self.pricing_mode,
        }


@dataclass(frozen=True)
class ComposedPrompt:
    text: str
    layers: LayersFired
    preamble: str = ""
    template: str = ""
    style_text: str = ""
    variables: dict[str, str] = field(default_factory=dict)

    def guarded_texts(self) -> list[str]:
        """Fields a tenant or customer can influence; the denylist scans these."""
        return [
            self.variables.get("serviceType", ""),
            self.variables.get("summary", ""),
            self.variables.get("customerNotes", ""),
            self.variables.get("tenantRenderNotes", ""),
            self.style_text,
            self.variables.get("tenantPrompt", ""),
        ]


def render_template(template: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders.

    Lines made only of placeholders that resolve to nothing are dropped;
    unknown placeholders resolve to nothing. Trailing whitespace is removed
    and runs of blank lines collapse to one.
    """
    out: list[str] = []
    for line in template.replace("\r\n", "\n").split("\n"):
        filled = _PLACEHOLDER_RE.sub(lambda m: values.get(m.group(1), ""), line).rstrip()
        if not filled.strip() and _PLACEHOLDER_RE.search(line):
            continue
        out.append(filled)
    text = "\n".join(out)
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip("\n")


def _join_nonempty(parts: list[str], sep: str) -> str:
    return sep.join(p for p in (_clean(x) for x in parts) if p)


def _line(label: str, value: str) -> str:
    return f"{label}: {value}" if value else ""


def compose_render_prompt(
    platform: PlatformLlmConfig,
    industry: IndustryPack | None,
    tenant: TenantLayer,
    inputs: RenderInputs,
) -> ComposedPrompt:
    base_preamble = _clean(platform.render_prompt_preamble)
    tenant_prompt = _clean(tenant.render_prompt_override)
    tenant_custom = bool(tenant_prompt) and tenant_prompt != base_preamble
    industry_preamble = _clean(industry.render_prompt_preamble) if industry is not None else ""
    industry_applied = bool(industry_preamble) and not tenant_custom

    if tenant_custom:
        layer_preamble = tenant_prompt
    elif industry_applied:
        layer_preamble = industry_preamble
    else:
        layer_preamble = ""
    preamble = _join_nonempty([base_preamble, layer_preamble], "\n")

    style_key = normalize_style_key(tenant.style_key)
    style_text = _clean(platform.style_text(style_key))
    notes = _clean(tenant.render_notes)

    variables = {
        "renderPromptPreamble": preamble,
        "style": style_text,
        "serviceType": inputs.service_type,
        "summary": inputs.summary,
        "customerNotes": inputs.customer_notes,
        "tenantRenderNotes": notes,
        "tenantPrompt": tenant_prompt if tenant_custom else "",
        "serviceTypeLine": _line("Service type", inputs.service_type),
        "summaryLine": _line("Estimate summary", inputs.summary),
        "customerNotesLine": _line("Customer notes", inputs.customer_notes),
        "tenantRenderNotesLine": _line("Shop render notes", notes),
    }
    template = platform.render_prompt_template
    text = render_template(template, variables)
    if preamble and "{renderPromptPreamble}" not in template:
        # Operator templates may omit the placeholder; the safety preamble still leads.
        text = f"{preamble}\n\n{text}" if text else preamble
    return ComposedPrompt(
        text=text,
        layers=LayersFired(
            industry_key=industry.key if industry is not None else "",
            industry_applied=industry_applied,
            tenant_custom_prompt=tenant_custom,
            tenant_style=style_key,
            tenant_notes=bool(notes),
        ),
        preamble=preamble,
        template=template,
        style_text=style_text,
        variables=variables,
    )


def _guardrail_block(blocked_topics: tuple[str, ...]) -> str:
    lines = [
        "### PLATFORM GUARDRAILS (NON-NEGOTIABLE)",
        "- Output MUST be valid JSON and MUST match the server-provided JSON schema exactly.",
        "- Do not fabricate unseen details from photos; if unsure, say so via assumptions/questions.",
        "- If photos/notes are ambiguous, set confidence lower and set inspection_required=true.",
    ]
    if blocked_topics:
        lines.append(f"- Never discuss or process these topics: {', '.join(blocked_topics)}.")
    return "\n".join(lines)


def _estimator_style_block(policy: PricingPolicy) -> str:
    if policy.ai_mode == "assessment_only":
        mode_line = (
            "- Pricing is disabled/assessment-only: summary should explain why a site visit is needed; "
            "do not include any pricing language."
        )
    elif policy.ai_mode == "fixed":
        mode_line = "- Pricing mode is FIXED: summary should explain the single-number estimate and the main cost drivers."
    else:
        mode_line = (
            "- Pricing mode is RANGE: summary should explain why the estimate is a range "
            "and the key drivers between low/high."
        )
    return "\n".join(
        [
            "### ESTIMATOR COMMUNICATION STYLE (IMPORTANT)",
            "- Write like a seasoned estimator writing notes for a customer + internal lead.",
            "- Avoid generic filler. Be concrete about what you see and what drives cost.",
            "- summary must be 2-4 sentences, plain English, no bullet points in summary.",
            mode_line,
            "- questions: 3-5 items max. Ask only what changes price or feasibility.",
            "- If inspection_required=true, summary should clearly state what needs to be verified onsite and why.",
        ]
    )


def _pricing_block(policy: PricingPolicy) -> str:
    lines = ["### PRICING POLICY (HARD RULES)"]
    if policy.ai_mode == "assessment_only":
        lines += [
            "- Pricing is disabled or assessment-only.",
            "- Set estimate_low = 0 and estimate_high = 0.",
            "- Do NOT output monetary values.",
        ]
    elif policy.ai_mode == "fixed":
        lines += ["- Pricing mode is FIXED.", "- Set estimate_low == estimate_high."]
    else:
        lines.append("- Pricing mode is RANGE. Output a low/high range.")
    if policy.pricing_enabled and policy.pricing_model:
        lines.append(f"- Pricing model hint: {policy.pricing_model}.")
        hint = PRICING_MODEL_HINTS.get(policy.pricing_model)
        if hint:
            lines.append(f"- {hint}")
    return "\n".join(lines)


def compose_estimator_prompt(
    platform: PlatformLlmConfig,
    industry: IndustryPack | None,
    tenant: TenantLayer,
    pricing: PricingPolicy,
) -> ComposedPrompt:
    policy = pricing.normalized()
    base_system = _clean(platform.quote_estimator_system)
    tenant_system = _clean(tenant.estimator_prompt_override)
    tenant_custom = bool(tenant_system) and tenant_system != base_system

    industry_block = ""
    if industry is not None and not tenant_custom:
        fragments = [_clean(industry.extra_system_preamble), _clean(industry.quote_estimator_system)]
        if any(fragments):
            industry_block = _join_nonempty(["### INDUSTRY SPECIALIZATION", *fragments], "\n\n")

    tenant_fragments = []
    if tenant.style_key:
        tenant_fragments.append(f"Tenant style preference: {tenant.style_key}.")
    if tenant.render_notes:
        tenant_fragments.append(f"Tenant-specific notes: {tenant.render_notes}.")
    tenant_block = _join_nonempty(["### TENANT CONTEXT", *tenant_fragments], "\n\n") if tenant_fragments else ""

    text = _join_nonempty(
        [
            _guardrail_block(platform.blocked_topics),
            platform.extra_system_preamble,
            tenant_system if tenant_custom else base_system,
            industry_block,
            tenant_block,
            _estimator_style_block(policy),
            _pricing_block(policy),
        ],
        "\n\n",
    )
    return ComposedPrompt(
        text=text,
        layers=LayersFired(
            industry_key=industry.key if industry is not None else "",
            industry_applied=bool(industry_block),
            tenant_custom_prompt=tenant_custom,
            tenant_style=tenant.style_key,
            tenant_notes=bool(tenant.render_notes),
            pricing_mode=policy.ai_mode,
        ),
        preamble=_clean(platform.extra_system_preamble),
    )


def build_render_debug_payload(
    *,
    composed: ComposedPrompt,
    render_model: str,
    image_urls: list[str],
) -> dict[str, Any]:
    urls = [u.strip() for u in image_urls if u and u.strip()]
    return {
        "debug_id": f"rd_{uuid.uuid4().hex[:12]}",
        "at": datetime.now(UTC).isoformat(),
        "render_model": render_model,
        "tenant_style_key": composed.layers.tenant_style,
        "style_text": composed.style_text,
        "preamble": composed.preamble,
        "template": composed.template,
        "final_prompt": composed.text,
        "layers": composed.layers.as_dict(),
        "inputs": {
            "service_type": composed.variables.get("serviceType", ""),
            "summary": composed.variables.get("summary", ""),
            "customer_notes": composed.variables.get("customerNotes", ""),
            "tenant_render_notes": composed.variables.get("tenantRenderNotes", ""),
        },
        "images": {"count": len(urls), "sample": urls[:3]},
    }
