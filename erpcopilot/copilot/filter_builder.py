"""
Domain filter builder -- natural-language filter text → Odoo domain.

Pure and deterministic: for a fixed (text, model, today) the output list is
identical across calls, which keeps cache fingerprints stable.  Every
condition is a ``[field, operator, value]`` triple and the list is an
implicit AND; no prefix operators are ever emitted.

Parsing order (categories compose by concatenation):
  1. explicit date range, or the first matching date-text rule
  2. state keywords from the model's ordered keyword map
  3. model-specific semantic filter groups
  4. structured ``field: value`` / ``field = value`` tokens

Spanish and English phrasings are both understood; matching is
case-insensitive and accent-tolerant.
"""
from __future__ import annotations

import calendar
import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Any

from erpcopilot.copilot.spec import DateRange
from erpcopilot.core.logging import get_logger
from erpcopilot.core.utils import make_clock
from erpcopilot.governance.model_registry import ModelRegistry, ModelSpec, load_registry

logger = get_logger(__name__)

DateWindow = tuple[date, date | None]


# ── Text helpers ────────────────────────────────────────

def fold(text: str) -> str:
    """Lower-case and strip accents ("Últimos" -> "ultimos")."""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def _today(today: date | datetime | None) -> date:
    if today is None:
        return make_clock()().date()
    if isinstance(today, datetime):
        return today.date()
    return today


# ── Month vocabulary ────────────────────────────────────

MONTHS: dict[str, int] = {
    "enero": 1, "january": 1,
    "febrero": 2, "february": 2,
    "marzo": 3, "march": 3,
    "abril": 4, "april": 4,
    "mayo": 5, "may": 5,
    "junio": 6, "june": 6,
    "julio": 7, "july": 7,
    "agosto": 8, "august": 8,
    "septiembre": 9, "setiembre": 9, "september": 9,
    "octubre": 10, "october": 10,
    "noviembre": 11, "november": 11,
    "diciembre": 12, "december": 12,
}

_MONTH_RE = re.compile(
    r"\b(" + "|".join(sorted((m for m in MONTHS if m != "may"), key=len, reverse=True)) + r")\b"
)
# English "may" is only a month next to a year or after a preposition
_MAY_RE = re.compile(r"\b(?:in|of|since|during|for|from|until)\s+(may)\b|\b(may)(?=\s*,?\s*(?:19|20)\d{2}\b)")
_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\b")

_WEEK_RE = re.compile(
    r"\b(primer[ao]?|first|1r[ao]|1st|segund[ao]|second|2d[ao]|2nd|"
    r"tercer[ao]?|third|3r[ao]|3rd|cuart[ao]|fourth|4t[ao]|4th|ultim[ao]|last)\s+(?:semana|week)\b"
)
_SINCE_RE = re.compile(r"\b(?:desde|since)\s+(?:(?:el|la|the|mes|month|de|of)\s+)*([a-z]+)")
_THIS_MONTH_RE = re.compile(r"\b(?:este mes|this month|mes actual|current month)\b")
_LAST_MONTH_RE = re.compile(r"\b(?:mes pasado|mes anterior|ultimo mes|last month|previous month)\b")
_LAST_DAYS_RE = re.compile(r"\b(?:ultimos?|last|past|pasados?)\s+(\d+)\s+(?:dias?|days?)\b")
_THIS_YEAR_RE = re.compile(r"\b(?:este ano|this year|ano actual|current year)\b")
_LAST_YEAR_RE = re.compile(r"\b(?:ano pasado|ano anterior|last year|previous year)\b")
_TODAY_RE = re.compile(r"\b(?:hoy|today)\b")
_YESTERDAY_RE = re.compile(r"\b(?:ayer|yesterday)\b")

_STRUCTURED_RE = re.compile(
    r"\b([a-zA-Z_][\w.]*)\s*[:=]\s*(?:'([^']*)'|\"([^\"]*)\"|([^\s,;'\"]+))"
)
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$")
_DAYS_AGO_RE = re.compile(r"^@days_ago:(\d+)$")


def _week_number(word: str) -> int:
    if word.startswith(("segund", "second", "2")):
        return 2
    if word.startswith(("tercer", "third", "3")):
        return 3
    if word.startswith(("cuart", "fourth", "4")):
        return 4
    if word.startswith(("ultim", "last")):
        return -1
    return 1


def find_month(text: str) -> int | None:
    """Earliest month name in already-folded *text*."""
    hits: list[tuple[int, int]] = []
    m = _MONTH_RE.search(text)
    if m:
        hits.append((m.start(), MONTHS[m.group(1)]))
    may = _MAY_RE.search(text)
    if may:
        hits.append((may.start(1) if may.group(1) else may.start(2), 5))
    if not hits:
        return None
    return min(hits)[1]


def _explicit_year(text: str) -> int | None:
    m = _YEAR_RE.search(text)
    return int(m.group(1)) if m else None


def _infer_year(month: int, explicit: int | None, today: date) -> int:
    """Explicit year, else the most recent past occurrence of *month*."""
    if explicit is not None:
        return explicit
    return today.year - 1 if month > today.month else today.year


def _month_bounds(year: int, month: int) -> tuple[date, date]:
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


# ── Date rules ──────────────────────────────────────────

def _parse_date_window(text: str, today: date) -> DateWindow | None:
    """First matching date rule over folded *text*; ``end`` is None for open ranges."""
    year = _explicit_year(text)

    week = _WEEK_RE.search(text)
    if week:
        month = find_month(text)
        if month is not None:
            y = _infer_year(month, year, today)
            last_day = calendar.monthrange(y, month)[1]
            n = _week_number(week.group(1))
            if n == -1:
                start_day, end_day = last_day - 6, last_day
            else:
                start_day, end_day = (n - 1) * 7 + 1, min(n * 7, last_day)
            return date(y, month, start_day), date(y, month, end_day)

    since = _SINCE_RE.search(text)
    if since and since.group(1) in MONTHS:
        month = MONTHS[since.group(1)]
        y = _infer_year(month, year, today)
        return date(y, month, 1), today

    month = find_month(text)
    if month is not None:
        return _month_bounds(_infer_year(month, year, today), month)

    if _THIS_MONTH_RE.search(text):
        return _month_bounds(today.year, today.month)

    if _LAST_MONTH_RE.search(text):
        if today.month == 1:
            return _month_bounds(today.year - 1, 12)
        return _month_bounds(today.year, today.month - 1)

    days = _LAST_DAYS_RE.search(text)
    if days:
        return today - timedelta(days=int(days.group(1))), None

    if _THIS_YEAR_RE.search(text):
        return date(today.year, 1, 1), date(today.year, 12, 31)

    if _LAST_YEAR_RE.search(text):
        return date(today.year - 1, 1, 1), date(today.year - 1, 12, 31)

    if year is not None:
        return date(year, 1, 1), date(year, 12, 31)

    if _TODAY_RE.search(text):
        return today, today

    if _YESTERDAY_RE.search(text):
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday

    return None


def resolve_date_window(text: str, today: date | datetime | None = None) -> DateWindow | None:
    """Date window implied by *text*, or ``None`` when it names no period."""
    return _parse_date_window(fold(text), _today(today))


# ── Structured tokens ───────────────────────────────────

def _coerce_token(raw: str) -> tuple[str, Any]:
    if _NUMBER_RE.match(raw):
        return "=", float(raw) if "." in raw else int(raw)
    if raw.lower() == "true":
        return "=", True
    if raw.lower() == "false":
        return "=", False
    return "ilike", raw


def _structured_conditions(text: str) -> tuple[list[list[Any]], str]:
    """Parse ``field: value`` tokens; return them plus the text with tokens removed."""
    conditions: list[list[Any]] = []
    for m in _STRUCTURED_RE.finditer(text):
        field_name = m.group(1)
        value = next((g for g in m.group(2, 3, 4) if g is not None), "").strip()
        if not value:
            continue
        operator, coerced = _coerce_token(value)
        conditions.append([field_name, operator, coerced])
    remainder = _STRUCTURED_RE.sub(" ", text)
    return conditions, remainder


# ── Keyword rules ───────────────────────────────────────

def _resolve_value(value: Any, today: date) -> Any:
    if isinstance(value, str):
        m = _DAYS_AGO_RE.match(value)
        if m:
            return (today - timedelta(days=int(m.group(1)))).isoformat()
    if isinstance(value, (list, tuple)):
        return [_resolve_value(v, today) for v in value]
    return value


def _state_condition(spec: ModelSpec, text: str) -> list[Any] | None:
    if not spec.state_field:
        return None
    for kw in spec.state_keywords:
        if kw.pattern.search(text):
            return [spec.state_field, "=", kw.state]
    return None


def _semantic_conditions(spec: ModelSpec, text: str, today: date) -> list[list[Any]]:
    conditions: list[list[Any]] = []
    for group in spec.semantic_filters:
        for rule in group.rules:
            if rule.pattern.search(text):
                conditions.extend(
                    [f, op, _resolve_value(v, today)] for f, op, v in rule.domain
                )
                break
    return conditions


# ── Public API ──────────────────────────────────────────

def build_domain(
    filters: str | None,
    model: str,
    date_range: DateRange | None = None,
    *,
    registry: ModelRegistry | None = None,
    today: date | datetime | None = None,
) -> list[list[Any]]:
    """Translate filter text (and an optional explicit range) into a domain.

    Parameters
    ----------
    filters : str | None
        Natural-language filter text, possibly with ``field: value`` tokens.
    model : str
        Odoo model name; selects the date field, state keywords and
        semantic filters from the registry.
    date_range : DateRange | None
        Explicit range; when given, date-text parsing is skipped.
    registry : ModelRegistry | None
        Defaults to the packaged registry.
    today : date | None
        Reference day for relative periods; defaults to the engine clock.

    Returns
    -------
    list[list]
        AND-ed ``[field, operator, value]`` conditions.
    """
    spec = (registry or load_registry()).lookup(model)
    day = _today(today)
    raw_text = filters or ""
    structured, free_text = _structured_conditions(raw_text)
    text = fold(free_text)

    domain: list[list[Any]] = []

    # 1. Dates
    if date_range is not None:
        window: DateWindow | None = (date_range.start, date_range.end)
    else:
        window = _parse_date_window(text, day)
    if window is not None:
        start, end = window
        domain.append([spec.date_field, ">=", start.isoformat()])
        if end is not None:
            domain.append([spec.date_field, "<=", end.isoformat()])

    # 2. State keywords, unless a structured token already names the state field
    if not any(c[0] == spec.state_field for c in structured):
        state = _state_condition(spec, text)
        if state:
            domain.append(state)

    # 3. Model-specific semantics
    domain.extend(_semantic_conditions(spec, text, day))

    # 4. Structured tokens
    domain.extend(structured)

    logger.debug("build_domain model=%s filters=%r -> %s", model, raw_text, domain)
    return domain


def has_condition_on(domain: list[list[Any]], field_name: str | None) -> bool:
    """Whether any condition in *domain* constrains *field_name*."""
    if not field_name:
        return False
    return any(
        isinstance(c, (list, tuple)) and c and c[0] == field_name
        for c in domain
    )
