import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from store import InMemoryDocumentStore  # noqa: E402

SCRIPT_TEXT = (
    "Ein KV-Diagramm ist eine grafische Darstellung boolescher Funktionen. "
    "Benachbarte Felder unterscheiden sich in genau einer Variablen. "
    "Das Zweierkomplement einer Zahl entsteht durch Invertieren aller Bits und Addition von eins."
)

EXERCISE_TEXT = (
    "Aufgabe 1 (4 Punkte)\n"
    "Berechne das Zweierkomplement der Zahl 13 im 8-Bit-Format.\n"
    "Aufgabe 2 (6 Punkte)\n"
    "Minimiere die Funktion mit einem KV-Diagramm:\n"
    "a) Trage die Minterme ein.\n"
    "b) Bestimme die Primimplikanten."
)


def script_response() -> dict:
    return {
        "topics": ["KV-Diagramm", "Zweierkomplement", "Einleitung"],
        "concepts": [
            {
                "term": "KV-Diagramm",
                "definition": "Grafische Darstellung boolescher Funktionen",
                "relatedTerms": ["Karnaugh-Veitch"],
                "evidenceSnippet": "Ein KV-Diagramm ist eine grafische Darstellung boolescher Funktionen",
            },
            {
                "term": "Qubit",
                "definition": "Quantenbit",
                "evidenceSnippet": "Quantencomputer verschränken Qubits miteinander",
            },
        ],
        "formulas": [
            {
                "latex": "\\overline{x} + 1",
                "description": "Zweierkomplement",
                "evidenceSnippet": "Invertieren aller Bits und Addition von eins",
            },
            {
                "latex": "siehe Beispiel",
                "evidenceSnippet": "Invertieren aller Bits",
            },
        ],
        "procedures": [
            {
                "name": "Zweierkomplement bilden",
                "steps": ["Alle Bits invertieren", "Eins addieren"],
                "evidenceSnippet": "Invertieren aller Bits und Addition von eins",
            }
        ],
        "workedExamples": [],
        "exercises": [],
        "structuralSignals": {"usesTables": False},
        "styleSignals": {"imperativeVerbs": ["bestimme"]},
        "coverageNotes": ["Keine Beispiele im Skript"],
    }


def exercise_response() -> dict:
    return {
        "topics": ["Zweierkomplement", "Karnaugh-Veitch", "Aufgabe 1"],
        "concepts": [],
        "formulas": [],
        "procedures": [],
        "workedExamples": [],
        "exercises": [
            {
                "questionText": "Berechne das Zweierkomplement der Zahl 13 im 8-Bit-Format. (4 Punkte)",
                "topics": ["Zweierkomplement"],
                "hasSolution": False,
                "evidenceSnippet": "Berechne das Zweierkomplement der Zahl 13 im 8-Bit-Format.",
            },
            {
                "questionText": "Minimiere die Funktion mit einem KV-Diagramm:\na) Trage die Minterme ein.\nb) Bestimme die Primimplikanten.",
                "topics": ["kv - diagramm"],
                "hasSolution": False,
                "evidenceSnippet": "Minimiere die Funktion mit einem KV-Diagramm",
            },
        ],
        "structuralSignals": {
            "taskNumberingPatterns": ["Aufgabe N"],
            "subtaskPatterns": ["a)", "b)"],
            "pointsPatterns": ["(4 Punkte)"],
            "taskStartPhrases": ["Berechne"],
        },
        "styleSignals": {
            "imperativeVerbs": ["Berechne", "Minimiere", "Bestimme"],
            "questionPhrases": ["Berechne das Zweierkomplement"],
            "notationConventions": {"booleanOperators": ["∧", "∨"]},
        },
        "coverageNotes": [],
    }


class ScriptedService:
    """Text generation stand-in that replays queued responses.

    Entries may be strings, dicts (sent as JSON) or exceptions (raised).
    The last entry repeats once the script is exhausted.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def generate(self, prompt, *, model=None, json_mode=False, max_retries=None):
        self.calls.append({"prompt": prompt, "model": model, "json_mode": json_mode})
        if not self.responses:
            raise AssertionError("no scripted response left")
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response, ensure_ascii=False)
        return response


@pytest.fixture
def memory_store():
    return InMemoryDocumentStore()


@pytest.fixture
def sqlite_store(tmp_path):
    from store import SQLiteDocumentStore

    store = SQLiteDocumentStore(str(tmp_path / "analysis.db"))
    store.init()
    yield store
    store.close()
