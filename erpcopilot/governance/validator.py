"""
Strict response validator -- checks a language-model draft answer against
the raw tool result it was supposed to summarize.

Checks performed:
  1. Real entity names are extracted from the result (group labels,
     relation labels and name fields of flat records)
  2. Candidate names (two or more capitalized words) are extracted from
     the draft, minus a denylist of places and product lines
  3. Candidates matching previously observed fabricated names
  4. Unmatched candidates that carry a generic surname
  5. Capitalized words next to a money figure that trace to no real name
  6. Money figures not within 10% of any real amount
  7. Calendar months / years contradicting the period the user asked for
  8. Leaked model reasoning and absurd amounts on an unassigned group

When anything fires, a deterministic fallback answer is built only from
the raw result.  False positives are acceptable; false negatives are not.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

from erpcopilot.copilot.filter_builder import MONTHS, fold, resolve_date_window
from erpcopilot.core.logging import get_logger
from erpcopilot.core.utils import format_money, make_clock
from erpcopilot.erp.rows import UNASSIGNED_LABEL, Relation, as_number

logger = get_logger(__name__)

AMOUNT_TOLERANCE = 0.10
ABSURD_UNASSIGNED = 1e12
FALLBACK_TOP = 10

KNOWN_FAKE_NAMES = frozenset(fold(n) for n in (
    "Laura Gómez", "Carlos Pérez", "María Rodríguez", "Jorge López", "Ana Martínez",
    "Juan García", "Pedro González", "Sofía Fernández", "Diego Torres", "Valentina Ramírez",
    "Carlos Rodríguez", "María Giménez", "Juan Pérez", "Lucía Fernández", "José Martínez",
    "Roberto Sánchez", "Fernanda López", "Miguel Ángel", "Gabriela Torres", "Andrés García",
    "John Doe", "Jane Doe", "John Smith", "Jane Smith",
))

GENERIC_SURNAMES = frozenset((
    "gomez", "perez", "rodriguez", "lopez", "martinez", "garcia", "gonzalez",
    "fernandez", "torres", "ramirez", "sanchez", "gimenez", "doe", "smith",
))

NON_NAME_PHRASES = tuple(fold(p) for p in (
    "Top Productos", "Ventas Por", "Enero De", "Octubre De", "Buenos Aires", "Santa Fe",
    "Entre Ríos", "Córdoba", "Single Bond", "Bulk Fill", "Evo Lux", "Data For",
    "Grand Total", "Sales Order", "New York",
))

_UNASSIGNED_KEYS = frozenset({fold(UNASSIGNED_LABEL), "sin asignar", "false", "none", "null", "undefined", "n/a", ""})

_REASONING_RE = re.compile(
    r"^(?:Clarify\s|The\s+user\s+(?:is|was|wants|asked|needs)|I\s+need\s+to\s|Let\s+me\s|"
    r"Based\s+on\s+the\s|According\s+to\s|It\s+seems\s|I\s+should\s|First,?\s+I\s|To\s+answer\s|"
    r"I\s+will\s|I'll\s+(?:check|look|query))",
    re.IGNORECASE,
)

_UPPER = "A-ZÁÉÍÓÚÑÜ"
_LOWER = "a-záéíóúñü"
_CANDIDATE_RE = re.compile(rf"[{_UPPER}][{_LOWER}]+(?:\s+[{_UPPER}][{_LOWER}]+)+")
_CAP_TOKEN_RE = re.compile(rf"(?<![\w{_LOWER}{_UPPER}])[{_UPPER}][{_LOWER}{_UPPER}'-]+")
_AMOUNT_RE = re.compile(
    r"\$\s*(\d[\d.,]*)(?:\s*(millones|millon|million|mil|mm|k|m)\b)?",
    re.IGNORECASE,
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+")
_YEAR_RE = re.compile(r"\b((?:19|20)\d{2})\b")
_MONTH_WORD_RE = re.compile(r"\b(" + "|".join(m for m in MONTHS if m != "may") + r")\b")
_MAY_RE = re.compile(r"\bMay\b")
_COMPARATIVE_RE = re.compile(
    r"\b(?:vs|versus|compared|comparad[oa]s?|comparacion|anterior|pasad[oa]|respecto)\b"
)
_AMOUNT_FIELD_RE = re.compile(r"amount|price|total|revenue|value|balance|residual|subtotal")

_MULTIPLIERS = {"k": 1e3, "mil": 1e3, "m": 1e6, "mm": 1e6, "millon": 1e6, "millones": 1e6, "million": 1e6}

# Capitalized words that are not entity names
_STOPWORDS = frozenset(
    """
    a an the in on of for to and or with by from at as so but if when which who what how
    this that these those there here it its we you they he she i our your their my
    is are was were has had have be been will would can could should may might
    total totals sales sale revenue income amount amounts invoice invoices invoiced billing
    purchase purchases payment payments order orders customer customers client clients
    vendor vendors supplier suppliers top data period month months year years week today yesterday
    overall grand net gross average sum count number also however finally meanwhile note summary
    highlights company team product products units quantity spent sold bought billed paid earned
    generated compared versus vs up down unassigned others other rest remaining first second third
    last next previous current each all both only just about around approximately roughly nearly
    over under more less than while during since until between after before yes no not none best
    largest biggest highest lowest main leading key ranking rank salesperson salespeople seller
    sellers usd ars eur q1 q2 q3 q4 monday tuesday wednesday thursday friday saturday sunday
    el la los las un una unos unas en de del por para con y o este esta estos estas ese esa hay
    se su sus nuestro nuestra ventas venta facturacion facturas factura compras compra pagos pago
    cobros cobro clientes cliente proveedores proveedor mes meses ano anos semana hoy ayer periodo
    datos resumen vendedor vendedores producto productos fue fueron es son tuvo vendio vendieron
    compro facturo sin asignar otros otras resto primer primero segundo tercero ultimo mayor menor
    principal principales aproximadamente comparado respecto anterior pasado actual nota ademas
    tambien luego lunes martes miercoles jueves viernes sabado domingo
    """.split()
) | frozenset(MONTHS)


@dataclass
class ResponseValidation:
    is_clean: bool
    issues: list[str] = field(default_factory=list)
    fabricated_names: list[str] = field(default_factory=list)
    real_names: list[str] = field(default_factory=list)
    has_invented_amounts: bool = False
    has_wrong_period: bool = False
    has_leaked_reasoning: bool = False
    has_absurd_unassigned: bool = False
    cleaned_fallback: str | None = None


# ── Raw result access ───────────────────────────────────

def _as_mapping(raw: Any) -> dict[str, Any]:
    """Accept a ToolPayload / QueryResult model or a plain dict."""
    if raw is None:
        return {"success": False}
    if hasattr(raw, "model_dump"):
        return raw.model_dump()
    return dict(raw)


def _group_total(value: Any) -> float:
    if isinstance(value, dict):
        return as_number(value.get("total"))
    return as_number(getattr(value, "total", value))


def extract_real_names(raw: dict[str, Any]) -> list[str]:
    names: list[str] = []
    for label in (raw.get("grouped") or {}):
        names.append(label)
        if " / " in label:
            names.extend(label.split(" / "))
    comparison = raw.get("comparison") or {}
    for key in ("current", "previous"):
        names.extend((comparison.get(key) or {}).keys())
    for record in raw.get("records") or []:
        for key, value in record.items():
            if isinstance(value, Relation):
                names.append(value.label)
            elif isinstance(value, (list, tuple)) and len(value) == 2 and isinstance(value[1], str):
                names.append(value[1])
            elif key in ("name", "display_name") and isinstance(value, str):
                names.append(value)
    seen: set[str] = set()
    unique = []
    for n in names:
        if n and n not in seen:
            seen.add(n)
            unique.append(n)
    return unique


def extract_real_amounts(raw: dict[str, Any]) -> list[float]:
    amounts: list[float] = []
    if raw.get("total") is not None:
        amounts.append(as_number(raw["total"]))
    for stats in (raw.get("grouped") or {}).values():
        amounts.append(_group_total(stats))
    comparison = raw.get("comparison") or {}
    for key in ("current_total", "previous_total"):
        if comparison.get(key) is not None:
            amounts.append(as_number(comparison[key]))
    variation = comparison.get("variation")
    if isinstance(variation, dict) and variation.get("value") is not None:
        amounts.append(abs(as_number(variation["value"])))
    for key in ("current", "previous"):
        amounts.extend(_group_total(v) for v in (comparison.get(key) or {}).values())
    for record in raw.get("records") or []:
        for key, value in record.items():
            if _AMOUNT_FIELD_RE.search(key) and isinstance(value, (int, float)) and not isinstance(value, bool):
                amounts.append(float(value))
    return amounts


# ── Draft parsing ───────────────────────────────────────

def extract_candidate_names(text: str) -> list[str]:
    found: list[str] = []
    for m in _CANDIDATE_RE.finditer(text):
        name = m.group(0)
        if any(p in fold(name) for p in NON_NAME_PHRASES):
            continue
        if name not in found:
            found.append(name)
    return found


def parse_amount(number: str, suffix: str | None = None) -> float | None:
    """Parse ``1,000`` / ``1.000.000`` / ``1,234.56`` / ``1.234,56`` (+ K/M suffix)."""
    s = number.rstrip(".,")
    if not s:
        return None
    if "," in s and "." in s:
        decimal_sep = "," if s.rfind(",") > s.rfind(".") else "."
        thousands = "." if decimal_sep == "," else ","
        s = s.replace(thousands, "").replace(decimal_sep, ".")
    elif "," in s or "." in s:
        sep = "," if "," in s else "."
        parts = s.split(sep)
        if len(parts) > 2 or len(parts[-1]) == 3:
            s = s.replace(sep, "")
        else:
            s = s.replace(sep, ".")
    try:
        value = float(s)
    except ValueError:
        return None
    if suffix:
        value *= _MULTIPLIERS.get(suffix.lower(), 1.0)
    return value


def extract_amounts(text: str) -> list[float]:
    amounts = []
    for m in _AMOUNT_RE.finditer(text):
        value = parse_amount(m.group(1), m.group(2))
        if value is not None:
            amounts.append(value)
    return amounts


def names_match(a: str, b: str) -> bool:
    """Accent-insensitive equality, containment, or same first name (> 3 chars)."""
    n1, n2 = fold(a).strip(), fold(b).strip()
    if not n1 or not n2:
        return False
    if n1 == n2 or n1 in n2 or n2 in n1:
        return True
    first1, first2 = n1.split()[0], n2.split()[0]
    return first1 == first2 and len(first1) > 3


def _looks_generic(name: str) -> bool:
    return any(word in GENERIC_SURNAMES for word in fold(name).split())


def _amount_is_real(value: float, real: Iterable[float]) -> bool:
    for r in real:
        if r == 0:
            if value == 0:
                return True
        elif abs(value - r) / abs(r) <= AMOUNT_TOLERANCE:
            return True
    return False


# ── Individual checks ───────────────────────────────────

def _unattributed_tokens(draft: str, real_names: list[str]) -> list[str]:
    """Capitalized words in money sentences that trace to no real name."""
    real_words = {w for n in real_names for w in re.findall(r"\w+", fold(n))}
    flagged: list[str] = []
    for sentence in _SENTENCE_SPLIT_RE.split(draft):
        if not _AMOUNT_RE.search(sentence):
            continue
        for token in _CAP_TOKEN_RE.findall(sentence):
            word = fold(token).strip("'-")
            if len(word) < 2 or word in _STOPWORDS or word in real_words:
                continue
            if token.isupper() and len(token) <= 4:
                continue
            if token not in flagged:
                flagged.append(token)
    return flagged


def _draft_periods(draft: str) -> tuple[set[int], set[int]]:
    folded = fold(draft)
    months = {MONTHS[m] for m in _MONTH_WORD_RE.findall(folded)}
    if _MAY_RE.search(draft):
        months.add(5)
    years = {int(y) for y in _YEAR_RE.findall(folded)}
    return months, years


def _months_back(day: date, n: int) -> date:
    y, m = divmod(day.year * 12 + day.month - 1 - n, 12)
    return date(y, m + 1, 1)


def _window_periods(start: date, end: date) -> tuple[set[int], set[int]]:
    """Calendar months and years covered by ``start..end``."""
    months: set[int] = set()
    y, m = start.year, start.month
    while (y, m) <= (end.year, end.month) and len(months) < 12:
        months.add(m)
        y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    return months, set(range(start.year, end.year + 1))


def detect_wrong_period(draft: str, user_query: str, today: date) -> bool:
    """True when the draft names a month/year outside the period the user asked for.

    A comparative draft may also name the previous comparison period
    (month before or year before the asked window), nothing else.
    """
    if not user_query:
        return False
    window = resolve_date_window(user_query, today)
    if window is None:
        return False
    start, end = window
    end = end or today
    allowed_months, allowed_years = _window_periods(start, end)
    if _COMPARATIVE_RE.search(fold(draft)):
        for shift in (1, 12):
            months, years = _window_periods(_months_back(start, shift), _months_back(end, shift))
            allowed_months |= months
            allowed_years |= years
    months, years = _draft_periods(draft)
    return bool(months - allowed_months) or bool(years - allowed_years)


def detect_absurd_unassigned(raw: dict[str, Any]) -> bool:
    for label, stats in (raw.get("grouped") or {}).items():
        if fold(label).strip() in _UNASSIGNED_KEYS and _group_total(stats) > ABSURD_UNASSIGNED:
            logger.warning("Absurd amount on unassigned group %r: %s", label, _group_total(stats))
            return True
    return False


# ── Fallback ────────────────────────────────────────────

def build_fallback(raw: dict[str, Any]) -> str:
    """Deterministic answer built only from the raw result."""
    if not raw.get("success"):
        return "Could not retrieve the data. Please try again."

    grouped = raw.get("grouped") or {}
    total = raw.get("total")
    if grouped:
        entries = sorted(grouped.items(), key=lambda kv: _group_total(kv[1]), reverse=True)[:FALLBACK_TOP]
        lines = ["Data for the period:", ""]
        lines += [f"{i}. {name} — {format_money(_group_total(stats))}" for i, (name, stats) in enumerate(entries, 1)]
        if total is not None:
            lines += ["", f"Total: {format_money(total)}"]
        return "\n".join(lines)
    if total:
        return f"Total: {format_money(total)}"
    if total is None and raw.get("count"):
        return f"Records found: {raw['count']}"
    return "$0, no data for the requested period."


# ── Public API ──────────────────────────────────────────

def validate_response(
    draft: str,
    raw_result: Any,
    user_query: str = "",
    today: date | datetime | None = None,
) -> ResponseValidation:
    """Cross-check *draft* against *raw_result*.

    Parameters
    ----------
    draft : str
        The language model's answer text.
    raw_result : ToolPayload | QueryResult | dict
        The tool result the draft is based on.
    user_query : str
        The user's question; used for the period check.
    today : date | None
        Reference day for relative periods; defaults to the engine clock.

    Returns
    -------
    ResponseValidation
        ``is_clean`` plus the individual findings and, when not clean, a
        fallback answer built solely from the raw data.
    """
    if today is None:
        today = make_clock()().date()
    elif isinstance(today, datetime):
        today = today.date()

    raw = _as_mapping(raw_result)
    issues: list[str] = []
    fabricated: list[str] = []
    real_names = extract_real_names(raw)

    for name in extract_candidate_names(draft):
        is_real = any(names_match(name, r) for r in real_names)
        if fold(name) in KNOWN_FAKE_NAMES and not any(fold(name) == fold(r) for r in real_names):
            fabricated.append(name)
            issues.append(f"Known fabricated name: {name!r}")
        elif not is_real and _looks_generic(name):
            fabricated.append(name)
            issues.append(f"Suspicious name not found in data: {name!r}")

    for token in _unattributed_tokens(draft, real_names):
        if not any(token in f for f in fabricated):
            fabricated.append(token)
            issues.append(f"Name next to an amount not found in data: {token!r}")

    real_amounts = extract_real_amounts(raw)
    invented = [a for a in extract_amounts(draft) if not _amount_is_real(a, real_amounts)]
    if invented:
        issues.append(f"Amounts not backed by data: {', '.join(format_money(a) for a in invented)}")

    wrong_period = detect_wrong_period(draft, user_query, today)
    if wrong_period:
        issues.append("Draft reports a different period than requested")

    leaked = bool(_REASONING_RE.match(draft.strip()))
    if leaked:
        issues.append("Draft leaks internal reasoning")

    absurd = detect_absurd_unassigned(raw)
    if absurd:
        issues.append("Absurd amount on an unassigned group")

    is_clean = not issues
    if not is_clean:
        logger.warning("Draft rejected: %s", "; ".join(issues))

    return ResponseValidation(
        is_clean=is_clean,
        issues=issues,
        fabricated_names=fabricated,
        real_names=real_names,
        has_invented_amounts=bool(invented),
        has_wrong_period=wrong_period,
        has_leaked_reasoning=leaked,
        has_absurd_unassigned=absurd,
        cleaned_fallback=None if is_clean else build_fallback(raw),
    )
