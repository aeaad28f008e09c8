"""Topic canonicalisation and low-confidence task heuristics.

Topic strings coming back from the model are inconsistent ("KV-Diagramm",
"kv - diagramm", "Karnaugh-Veitch"). They are folded to a canonical key via an
alias table, with a normalised fallback key when no alias matches. Generic
section words and page/chapter markers are rejected as noise.

The ``detect_*`` helpers at the bottom are keyword/regex heuristics. Their
output is never evidence-validated and callers must treat it as weak signal.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

__all__ = [
    "CANONICAL_TOPIC_MAP",
    "NOISE_TOPICS",
    "MIN_TOPIC_LENGTH",
    "MAX_PARTIAL_LENGTH_DIFF",
    "CanonicalTopicMatch",
    "NormalizedTopics",
    "SubtaskInfo",
    "PointsInfo",
    "TaskNumberInfo",
    "normalize_topic_key",
    "find_canonical_topic",
    "canonical_topic_key",
    "is_noise_topic",
    "normalize_topics",
    "get_topic_display_label",
    "detect_expected_answer_format",
    "detect_subtasks",
    "detect_task_number",
    "detect_points",
    "estimate_difficulty",
]

# canonical key -> aliases; the first alias is the preferred display form
CANONICAL_TOPIC_MAP: Dict[str, List[str]] = {
    # boolean algebra and minimisation
    "boolesche-algebra": [
        "Boolesche Algebra",
        "boolsche algebra", "boolean algebra", "boolesche logik", "boolsche logik",
        "schaltalgebra", "switching algebra",
    ],
    "wahrheitstabelle": [
        "Wahrheitstabelle",
        "wahrheitstafel", "truth table", "funktionstabelle", "wahrheits-tabelle",
    ],
    "kv-diagramm": [
        "KV-Diagramm",
        "karnaugh-veitch", "karnaugh veitch", "karnaugh", "kv map", "kvmap", "k-map",
        "kmap", "kv - diagramm", "kvdiagramm", "karnaugh-diagramm", "veitch-diagramm",
    ],
    "quine-mccluskey": [
        "Quine-McCluskey",
        "quine mccluskey", "quinemccluskey", "qmc", "quine-mc-cluskey", "mccluskey",
        "tabellenverfahren", "quine-mccluskey-verfahren",
    ],
    "minimierung": [
        "Minimierung",
        "vereinfachung", "minimieren", "simplification", "reduktion", "optimierung",
        "funktionsminimierung", "schaltungsminimierung",
    ],
    "primimplikanten": [
        "Primimplikanten",
        "primimplikant", "prime implicants", "kernimplikanten", "wesentliche primimplikanten",
    ],
    # number systems
    "zahlensysteme": [
        "Zahlensysteme",
        "zahlensystem", "number systems", "stellenwertsysteme", "positionssysteme",
    ],
    "binaersystem": [
        "Binärsystem",
        "binär", "binary", "dualsystem", "zweier-system", "basis-2",
    ],
    "hexadezimal": [
        "Hexadezimalsystem",
        "hex", "hexadezimal", "hexadecimal", "basis-16", "sechzehnersystem",
    ],
    "oktal": [
        "Oktalsystem",
        "octal", "basis-8", "achtersystem",
    ],
    "bcd": [
        "BCD-Code",
        "binary coded decimal", "bcd code", "8421-code", "bcd",
    ],
    "zweierkomplement": [
        "Zweierkomplement",
        "twos complement", "2er komplement", "zweier komplement", "vorzeichendarstellung",
    ],
    "einerkomplement": [
        "Einerkomplement",
        "ones complement", "1er komplement", "einer komplement",
    ],
    "gleitkommazahl": [
        "Gleitkommazahlen",
        "floating point", "fließkomma", "gleitkomma", "ieee754", "ieee 754",
    ],
    "festkommazahl": [
        "Festkommazahlen",
        "fixed point", "festkomma",
    ],
    # digital logic
    "gatter": [
        "Logikgatter",
        "gates", "logic gates", "schaltgatter", "grundgatter",
        "and", "or", "not", "nand", "nor", "xor", "xnor",
    ],
    "schaltnetze": [
        "Schaltnetze",
        "schaltnetz", "combinational circuits", "kombinatorische schaltungen",
        "kombinationsschaltung",
    ],
    "schaltwerke": [
        "Schaltwerke",
        "schaltwerk", "sequential circuits", "sequentielle schaltungen", "zustandsautomaten",
    ],
    "flipflop": [
        "Flipflops",
        "flip-flop", "flip flop", "speicherglieder", "bistabile kippstufe",
        "rs-flipflop", "jk-flipflop", "d-flipflop", "t-flipflop",
    ],
    "multiplexer": [
        "Multiplexer",
        "mux", "datenselektor", "multiplexing",
    ],
    "demultiplexer": [
        "Demultiplexer",
        "demux", "datenverteiler", "demultiplexing",
    ],
    "addierer": [
        "Addierer",
        "adder", "halbaddierer", "volladdierer", "carry-lookahead",
        "ripple carry", "half adder", "full adder",
    ],
    "komparator": [
        "Komparator",
        "comparator", "vergleicher", "größenvergleich",
    ],
    # automata
    "automat": [
        "Automaten",
        "automaton", "automata", "zustandsmaschine", "state machine",
        "endlicher automat", "finite automaton", "fsm",
    ],
    "dea": [
        "DEA",
        "dfa", "deterministischer automat", "deterministic finite automaton",
    ],
    "nea": [
        "NEA",
        "nfa", "nichtdeterministischer automat", "non-deterministic finite automaton",
    ],
    "zustandsdiagramm": [
        "Zustandsdiagramm",
        "state diagram", "zustandsgraph", "automatengraph", "übergangsgraph",
    ],
    "zustandstabelle": [
        "Zustandstabelle",
        "state table", "übergangstabelle", "transition table",
    ],
    "regulaere-ausdruecke": [
        "Reguläre Ausdrücke",
        "regex", "regexp", "regular expressions", "regulärer ausdruck",
    ],
    # computer architecture
    "alu": [
        "ALU",
        "arithmetic logic unit", "arithmetisch-logische einheit", "rechenwerk",
    ],
    "register": [
        "Register",
        "registers", "registerbank", "speicherregister", "schieberegister",
    ],
    "speicher": [
        "Speicher",
        "memory", "ram", "rom", "cache", "speicherarchitektur",
        "hauptspeicher", "arbeitsspeicher",
    ],
    "bus": [
        "Bus-Systeme",
        "bus", "datenbus", "adressbus", "steuerbus", "systembus",
    ],
    "cpu": [
        "CPU",
        "processor", "prozessor", "central processing unit", "steuerwerk", "leitwerk",
    ],
    # codes
    "fehlerkorrektur": [
        "Fehlerkorrektur",
        "error correction", "ecc", "fehlerkorrekturcode", "fehlererkennung",
    ],
    "hamming": [
        "Hamming-Code",
        "hamming", "hamming code", "hamming-distanz", "hamming distance",
    ],
    "parity": [
        "Parität",
        "parity", "paritätsbit", "gerade parität", "ungerade parität",
    ],
    # misc
    "horner-schema": [
        "Horner-Schema",
        "horner", "horner schema", "hornerschema", "horner-verfahren",
    ],
    "assembler": [
        "Assembler",
        "assembly", "maschinensprache", "maschinenprogrammierung",
    ],
    "mikroprogrammierung": [
        "Mikroprogrammierung",
        "microcode", "mikroprogramm", "mikrobefehl",
    ],
}

NOISE_TOPICS = frozenset({
    "aufgaben", "aufgabe", "übungen", "übung", "exercises", "exercise",
    "beispiel", "beispiele", "example", "examples",
    "keine zusammenfassung", "keine zusammenfassung mehr möglich",
    "allgemein", "general", "sonstiges", "misc", "miscellaneous",
    "einleitung", "einführung", "introduction", "intro",
    "zusammenfassung", "summary", "fazit", "conclusion",
    "anhang", "appendix", "literatur", "quellen", "references",
    "seite", "page", "kapitel", "chapter", "abschnitt", "section",
})

MIN_TOPIC_LENGTH = 3
MAX_PARTIAL_LENGTH_DIFF = 5

_UMLAUTS: Tuple[Tuple[str, str], ...] = (("ä", "ae"), ("ö", "oe"), ("ü", "ue"), ("ß", "ss"))
_PAREN_RE = re.compile(r"\([^)]*\)")
_DASH_RE = re.compile(r"\s*[-–—_]\s*")
_APOSTROPHE_RE = re.compile(r"['‘’´`\"“”„]")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9\s-]")
_SPACES_RE = re.compile(r"\s+")
_HYPHEN_RUN_RE = re.compile(r"-{2,}")

_PAGE_RE = re.compile(r"^(seite|page)?-?\d+$")
_CHAPTER_RE = re.compile(r"^(kapitel|chapter|abschnitt|section)-?\d+")
_TASK_HEADER_RE = re.compile(r"^(aufgabe|uebung|exercise|task)-?\d+[a-z]?$")


@dataclass(frozen=True)
class CanonicalTopicMatch:
    canonical_key: str
    display_label: str
    matched: bool
    matched_from: Optional[str] = None


@dataclass(frozen=True)
class NormalizedTopics:
    canonical_topics: List[str]
    display_topics: List[str]
    topic_mapping: Dict[str, str]


@dataclass(frozen=True)
class SubtaskInfo:
    has_subtasks: bool
    pattern: str
    count: int
    markers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PointsInfo:
    has_points: bool
    points: Optional[float] = None
    format: Optional[str] = None


@dataclass(frozen=True)
class TaskNumberInfo:
    has_task_number: bool
    task_number: Optional[int] = None
    format: Optional[str] = None


# ------------------------------------------------------------------
# Normalisation
# ------------------------------------------------------------------
def normalize_topic_key(topic: str) -> str:
    """Fold ``topic`` to a lowercase, hyphen-separated ASCII key."""

    if not topic or not isinstance(topic, str):
        return ""

    normalized = unicodedata.normalize("NFC", topic).lower().strip()
    normalized = _APOSTROPHE_RE.sub("", normalized)
    normalized = _PAREN_RE.sub(" ", normalized)
    normalized = _DASH_RE.sub("-", normalized)
    for umlaut, replacement in _UMLAUTS:
        normalized = normalized.replace(umlaut, replacement)
    normalized = (
        unicodedata.normalize("NFKD", normalized).encode("ascii", "ignore").decode("ascii")
    )
    normalized = _INVALID_CHARS_RE.sub(" ", normalized).strip()
    normalized = _SPACES_RE.sub("-", normalized)
    normalized = _HYPHEN_RUN_RE.sub("-", normalized)
    return normalized.strip("-")


def _build_alias_index() -> List[Tuple[str, str, str, str]]:
    index: List[Tuple[str, str, str, str]] = []
    for canonical_key, aliases in CANONICAL_TOPIC_MAP.items():
        display = aliases[0]
        index.append((canonical_key, display, canonical_key, canonical_key))
        for alias in aliases:
            index.append((canonical_key, display, normalize_topic_key(alias), alias))
    return index


_ALIAS_INDEX = _build_alias_index()
_NOISE_KEYS = frozenset(normalize_topic_key(topic) for topic in NOISE_TOPICS)


def _display_case(topic: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in topic.strip().split())


def is_noise_topic(topic: str) -> bool:
    """Return ``True`` for generic headers, page/chapter markers and stubs."""

    normalized = normalize_topic_key(topic)
    if normalized in _NOISE_KEYS:
        return True
    if len(normalized) < MIN_TOPIC_LENGTH:
        return True
    if _PAGE_RE.match(normalized) or _CHAPTER_RE.match(normalized):
        return True
    return bool(_TASK_HEADER_RE.match(normalized))


def _contains_tokens(key: str, part: str) -> bool:
    tokens = key.split("-")
    needle = part.split("-")
    width = len(needle)
    return any(tokens[i : i + width] == needle for i in range(len(tokens) - width + 1))


def find_canonical_topic(topic: str) -> CanonicalTopicMatch:
    """Resolve ``topic`` against the alias table.

    Exact matches win over partial ones regardless of table order. Partial
    matches (containment in either direction) compare whole hyphen-separated
    tokens, so "not" never matches inside "notation". They only count when the
    lengths differ by at most :data:`MAX_PARTIAL_LENGTH_DIFF`, and aliases
    shorter than :data:`MIN_TOPIC_LENGTH` never match partially.
    """

    normalized_input = normalize_topic_key(topic)
    if not normalized_input or len(normalized_input) < MIN_TOPIC_LENGTH:
        return CanonicalTopicMatch(normalized_input, (topic or "").strip(), False)

    if is_noise_topic(normalized_input):
        return CanonicalTopicMatch("", "", False)

    for canonical_key, display, normalized_alias, alias in _ALIAS_INDEX:
        if normalized_input == normalized_alias:
            return CanonicalTopicMatch(canonical_key, display, True, alias)

    for canonical_key, display, normalized_alias, alias in _ALIAS_INDEX:
        if len(normalized_alias) < MIN_TOPIC_LENGTH:
            continue
        if _contains_tokens(normalized_input, normalized_alias) or _contains_tokens(
            normalized_alias, normalized_input
        ):
            if abs(len(normalized_input) - len(normalized_alias)) <= MAX_PARTIAL_LENGTH_DIFF:
                return CanonicalTopicMatch(canonical_key, display, True, alias)

    return CanonicalTopicMatch(normalized_input, _display_case(topic), False)


def canonical_topic_key(topic: str) -> str:
    """Canonical key for ``topic``; empty string for noise."""

    return find_canonical_topic(topic).canonical_key


def normalize_topics(topics: List[str]) -> NormalizedTopics:
    """Canonicalise a topic list, dropping noise and collapsing aliases."""

    canonical: List[str] = []
    display: Dict[str, str] = {}
    mapping: Dict[str, str] = {}
    for topic in topics:
        result = find_canonical_topic(topic)
        key = result.canonical_key
        if not key or len(key) < MIN_TOPIC_LENGTH:
            continue
        if key not in display:
            canonical.append(key)
            display[key] = result.display_label
        mapping[topic] = key
    return NormalizedTopics(
        canonical_topics=canonical,
        display_topics=[display[key] for key in canonical],
        topic_mapping=mapping,
    )


def get_topic_display_label(canonical_key: str) -> str:
    aliases = CANONICAL_TOPIC_MAP.get(canonical_key)
    if aliases:
        return aliases[0]
    return _display_case(canonical_key.replace("-", " "))


# ------------------------------------------------------------------
# Heuristic detectors (low confidence)
# ------------------------------------------------------------------
_ANSWER_FORMAT_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("truthTable", re.compile(r"wahrheitstabelle|wahrheitstafel|truth\s*table|funktionstabelle")),
    ("kvDiagram", re.compile(r"kv[-\s]?diagramm|karnaugh|veitch|k[-\s]?map")),
    ("circuitDiagram", re.compile(r"schalt(netz|bild|plan|werk)|circuit|gatter(schaltung)?|logic\s*diagram")),
    ("calculationSteps", re.compile(r"berechne|rechne|umwandl|konvertier|wandle|horner|division")),
    ("bitLayout", re.compile(r"ieee\s*754|gleitkomma|floating\s*point|mantisse|exponent.*bias")),
    ("stateTable", re.compile(r"zustandstabelle|zustandsdiagramm|übergangstabelle|automat")),
    ("primeImplicantTable", re.compile(r"primimplikant|quine|mccluskey|minimier")),
    ("shortText", re.compile(r"erkläre|erläutere|beschreibe|definiere|was\s+(ist|sind|bedeutet)")),
    ("numberRepresentation", re.compile(r"binär|dual|hexadezimal|oktal|zweierkomplement|darstellung")),
)


def detect_expected_answer_format(text: str) -> List[str]:
    """Keyword guess of the answer formats a task asks for."""

    lower = (text or "").lower()
    formats = [name for name, pattern in _ANSWER_FORMAT_PATTERNS if pattern.search(lower)]
    return formats or ["freeform"]


_LETTER_SUBTASK_RE = re.compile(r"(?:^|\n)\s*(?:\(?[a-h]\)|\([a-h]\))", re.MULTILINE)
_NUMBER_SUBTASK_RE = re.compile(r"(?:^|\n)\s*(?:\d+[.):]|\(\d+\))", re.MULTILINE)
_ROMAN_SUBTASK_RE = re.compile(r"(?:^|\n)\s*(?:\(?[ivx]+\)|\([ivx]+\))", re.MULTILINE | re.IGNORECASE)


def detect_subtasks(text: str) -> SubtaskInfo:
    """Detect ``a)``, ``1.`` or ``(ii)`` style subtask markers at line starts."""

    text = text or ""
    for pattern_name, regex in (
        ("letter", _LETTER_SUBTASK_RE),
        ("number", _NUMBER_SUBTASK_RE),
        ("roman", _ROMAN_SUBTASK_RE),
    ):
        matches = regex.findall(text)
        if len(matches) >= 2:
            return SubtaskInfo(True, pattern_name, len(matches), tuple(match.strip() for match in matches))
    return SubtaskInfo(False, "none", 0)


_TASK_NUMBER_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = tuple(
    (label, re.compile(rf"{label}\s+(\d+)", re.IGNORECASE))
    for label in ("aufgabe", "exercise", "übung", "task", "problem", "frage", "question")
)


def detect_task_number(text: str) -> TaskNumberInfo:
    for label, pattern in _TASK_NUMBER_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return TaskNumberInfo(True, int(match.group(1)), label)
    return TaskNumberInfo(False)


_POINTS_PATTERNS: Tuple["re.Pattern[str]", ...] = (
    re.compile(r"\((\d+(?:[.,]\d+)?)\s*P(?:unkte?)?\)", re.IGNORECASE),
    re.compile(r"\[(\d+(?:[.,]\d+)?)\s*P(?:unkte?)?\]", re.IGNORECASE),
    re.compile(r"(\d+(?:[.,]\d+)?)\s*Punkte?\b", re.IGNORECASE),
    re.compile(r"\((\d+(?:[.,]\d+)?)\s*points?\)", re.IGNORECASE),
    re.compile(r"(\d+(?:[.,]\d+)?)\s*points?\b", re.IGNORECASE),
    re.compile(r"\((\d+(?:[.,]\d+)?)\s*P\.\)", re.IGNORECASE),
)


def detect_points(text: str) -> PointsInfo:
    """Find a points annotation such as ``(10P)``, ``[3P]`` or ``5 Punkte``."""

    for pattern in _POINTS_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return PointsInfo(True, float(match.group(1).replace(",", ".")), pattern.pattern)
    return PointsInfo(False)


_EASY_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"einfach", r"leicht", r"simple", r"basic", r"grundlegend",
        r"angeben", r"nennen", r"definieren", r"\(1-2\s*p", r"\(1\s*p", r"\(2\s*p",
    )
)
_HARD_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"schwer", r"schwierig", r"komplex", r"anspruchsvoll", r"advanced",
        r"beweisen", r"herleiten", r"entwickeln", r"optimieren",
        r"\(8-?\d+\s*p", r"\(9\s*p", r"\(10\s*p", r"\(1\d\s*p", r"\(2\d\s*p",
    )
)


def estimate_difficulty(text: str) -> str:
    """Return ``easy``, ``hard`` or ``unknown`` from surface cues.

    Hard keywords beat easy ones, then points (≤ 3 easy, ≥ 8 hard), then four
    or more subtasks count as hard.
    """

    lower = (text or "").lower()
    if any(pattern.search(lower) for pattern in _HARD_PATTERNS):
        return "hard"
    if any(pattern.search(lower) for pattern in _EASY_PATTERNS):
        return "easy"

    points = detect_points(text)
    if points.has_points and points.points:
        if points.points <= 3:
            return "easy"
        if points.points >= 8:
            return "hard"

    subtasks = detect_subtasks(text)
    if subtasks.has_subtasks and subtasks.count >= 4:
        return "hard"
    return "unknown"
