"""
Loads, parses, and caches the model configuration YAML into typed objects.

The registry is the single source of truth for per-model query policy:
  - primary date field, monetary field, state field
  - default projection
  - natural-language state keywords and auto-applied states
  - model-specific semantic filter rules
  - static field-name corrections and grouping redirects

It is read-only after load; ``lookup`` never raises and degrades to a
conservative default for unregistered models.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

_REGISTRY_PATH = Path(__file__).resolve().parents[1] / "semantic_layer" / "models.yml"

DEFAULT_DATE_FIELD = "create_date"


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class StateKeyword:
    pattern: re.Pattern
    state: str


@dataclass(frozen=True)
class SemanticRule:
    pattern: re.Pattern
    domain: tuple[tuple[Any, ...], ...]


@dataclass(frozen=True)
class SemanticFilterGroup:
    """Mutually exclusive rules; the first one matching the text applies."""
    name: str
    rules: tuple[SemanticRule, ...] = ()


@dataclass(frozen=True)
class ModelSpec:
    name: str
    date_field: str = DEFAULT_DATE_FIELD
    amount_field: str | None = None
    state_field: str | None = None
    default_fields: tuple[str, ...] = ()
    state_keywords: tuple[StateKeyword, ...] = ()
    auto_states: tuple[str, ...] = ()
    state_guard: bool = True
    confirmed_hint: str = ""
    insight_type: str = "general"
    semantic_filters: tuple[SemanticFilterGroup, ...] = ()
    registered: bool = True

    @property
    def guarded(self) -> bool:
        """Whether an unfiltered state should trigger the distribution warning."""
        return bool(self.state_field) and self.state_guard


@dataclass
class ModelRegistry:
    """Fully parsed model configuration."""

    version: int
    models: dict[str, ModelSpec]                       # keyed by model name
    field_corrections: dict[str, dict[str, str]]       # model -> wrong -> right
    grouping_redirects: dict[tuple[str, str], str]     # (model, group field) -> line model
    default_date_field: str = DEFAULT_DATE_FIELD

    # ── Convenience look-ups ─────────────────────────

    def lookup(self, model: str) -> ModelSpec:
        """Return the registered spec, or a conservative default for unknown models."""
        spec = self.models.get(model)
        if spec is not None:
            return spec
        return ModelSpec(name=model, date_field=self.default_date_field, registered=False)

    def get_model_names(self) -> list[str]:
        return list(self.models.keys())

    def suggest_field_correction(self, model: str, wrong_field: str) -> str | None:
        """Known rename for a field the server rejected, or ``None``."""
        return self.field_corrections.get(model, {}).get(wrong_field)

    def redirect_for_grouping(self, model: str, group_by: list[str] | tuple[str, ...]) -> str | None:
        """Line-level model to use when *model* is grouped by a line-only field."""
        for g in group_by:
            base = g.split(":", 1)[0]
            target = self.grouping_redirects.get((model, base))
            if target:
                return target
        return None


# ── Parsing ──────────────────────────────────────────────

def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def _parse_state_keyword(raw: dict[str, Any]) -> StateKeyword:
    return StateKeyword(pattern=_compile(raw["match"]), state=str(raw["state"]))


def _parse_rule(raw: dict[str, Any]) -> SemanticRule:
    return SemanticRule(
        pattern=_compile(raw["match"]),
        domain=tuple(tuple(cond) for cond in raw.get("domain") or []),
    )


def _parse_filter_group(raw: dict[str, Any]) -> SemanticFilterGroup:
    return SemanticFilterGroup(
        name=raw.get("name", ""),
        rules=tuple(_parse_rule(r) for r in raw.get("rules") or []),
    )


def _parse_model_spec(raw: dict[str, Any], default_date_field: str) -> ModelSpec:
    return ModelSpec(
        name=raw["name"],
        date_field=raw.get("date_field") or default_date_field,
        amount_field=raw.get("amount_field"),
        state_field=raw.get("state_field"),
        default_fields=tuple(raw.get("default_fields") or []),
        state_keywords=tuple(_parse_state_keyword(k) for k in raw.get("state_keywords") or []),
        auto_states=tuple(raw.get("auto_states") or []),
        state_guard=raw.get("state_guard", True),
        confirmed_hint=raw.get("confirmed_hint", ""),
        insight_type=raw.get("insight_type", "general"),
        semantic_filters=tuple(_parse_filter_group(g) for g in raw.get("semantic_filters") or []),
    )


def _parse_registry(raw_yaml: dict[str, Any]) -> ModelRegistry:
    default_date_field = raw_yaml.get("default_date_field", DEFAULT_DATE_FIELD)
    models = {
        m["name"]: _parse_model_spec(m, default_date_field)
        for m in raw_yaml.get("models", [])
    }
    corrections = {
        model: dict(table or {})
        for model, table in (raw_yaml.get("field_corrections") or {}).items()
    }
    redirects = {
        (r["model"], r["group_by"]): r["target"]
        for r in raw_yaml.get("grouping_redirects", [])
    }
    return ModelRegistry(
        version=raw_yaml.get("version", 1),
        models=models,
        field_corrections=corrections,
        grouping_redirects=redirects,
        default_date_field=default_date_field,
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_registry() -> ModelRegistry:
    """Load and cache the model registry from YAML."""
    with open(_REGISTRY_PATH, encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    return _parse_registry(raw)


def lookup(model: str) -> ModelSpec:
    return load_registry().lookup(model)
