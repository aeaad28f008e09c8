import pytest

from engines.coverage import generate_topic_id
from topic_normalizer import (
    canonical_topic_key,
    detect_expected_answer_format,
    detect_points,
    detect_subtasks,
    detect_task_number,
    estimate_difficulty,
    find_canonical_topic,
    get_topic_display_label,
    is_noise_topic,
    normalize_topic_key,
    normalize_topics,
)


@pytest.mark.parametrize("alias", ["KV-Diagramm", "kv - diagramm", "Karnaugh-Veitch", "K-Map", "KV Diagramm"])
def test_kv_aliases_share_canonical_key(alias):
    assert canonical_topic_key(alias) == "kv-diagramm"


def test_aliases_collapse_to_one_topic_id():
    ids = {generate_topic_id(alias, "ti-1") for alias in ("KV-Diagramm", "kv - diagramm", "Karnaugh-Veitch")}

    assert len(ids) == 1
    assert generate_topic_id("KV-Diagramm", "ti-2") not in ids


@pytest.mark.parametrize("topic", ["Notation", "Prompt", "Hexagon", "Business", "Random", "Ordnung"])
def test_short_aliases_do_not_match_inside_words(topic):
    match = find_canonical_topic(topic)

    assert not match.matched
    assert match.canonical_key == normalize_topic_key(topic)


def test_unrelated_topics_keep_separate_keys():
    keys = {canonical_topic_key(topic) for topic in ("Notation", "Random", "Gatter", "Speicher", "Prompt")}

    assert keys == {"notation", "random", "gatter", "speicher", "prompt"}


def test_partial_match_on_whole_tokens():
    match = find_canonical_topic("Speicher ROM")

    assert match.matched
    assert match.canonical_key == "speicher"


def test_normalize_topic_key_folds_umlauts_and_punctuation():
    assert normalize_topic_key("Reguläre Ausdrücke (Regex)") == "regulaere-ausdruecke"
    assert normalize_topic_key("  Gleitkomma – Zahlen ") == "gleitkomma-zahlen"
    assert normalize_topic_key("") == ""


@pytest.mark.parametrize("topic", ["Einleitung", "Zusammenfassung", "Seite 12", "Kapitel 3", "Aufgabe 2b"])
def test_noise_topics_are_rejected(topic):
    assert is_noise_topic(topic)
    assert canonical_topic_key(topic) == ""


def test_short_topics_are_dropped():
    assert is_noise_topic("ab")
    assert normalize_topics(["ab", "Automaten"]).canonical_topics == ["automat"]


def test_exact_match_wins_over_partial():
    match = find_canonical_topic("Hamming-Distanz")

    assert match.matched
    assert match.canonical_key == "hamming"
    assert match.display_label == "Hamming-Code"


def test_unknown_topic_keeps_normalised_key():
    match = find_canonical_topic("Pipelining im Prozessorentwurf")

    assert not match.matched
    assert match.canonical_key == "pipelining-im-prozessorentwurf"
    assert match.display_label == "Pipelining Im Prozessorentwurf"


def test_normalize_topics_dedupes_and_maps():
    result = normalize_topics(["KV-Diagramm", "Einleitung", "karnaugh", "Zweierkomplement"])

    assert result.canonical_topics == ["kv-diagramm", "zweierkomplement"]
    assert result.display_topics == ["KV-Diagramm", "Zweierkomplement"]
    assert result.topic_mapping == {
        "KV-Diagramm": "kv-diagramm",
        "karnaugh": "kv-diagramm",
        "Zweierkomplement": "zweierkomplement",
    }


def test_display_label_falls_back_to_title_case():
    assert get_topic_display_label("kv-diagramm") == "KV-Diagramm"
    assert get_topic_display_label("neue-themen") == "Neue Themen"


def test_detect_expected_answer_format():
    assert "truthTable" in detect_expected_answer_format("Stelle die Wahrheitstabelle auf.")
    assert "kvDiagram" in detect_expected_answer_format("Minimiere mit einem KV-Diagramm.")
    assert detect_expected_answer_format("Viel Erfolg!") == ["freeform"]


def test_detect_subtasks_requires_two_markers():
    text = "Gegeben sei f.\na) Zeichne den Graphen.\nb) Bestimme die Nullstellen."

    info = detect_subtasks(text)

    assert info.has_subtasks
    assert info.pattern == "letter"
    assert info.markers == ("a)", "b)")
    assert not detect_subtasks("a) nur eine Teilaufgabe").has_subtasks


def test_detect_task_number_and_points():
    assert detect_task_number("Aufgabe 7: Automaten").task_number == 7
    assert not detect_task_number("Ohne Nummer").has_task_number

    points = detect_points("Berechne x. (2,5 Punkte)")
    assert points.has_points
    assert points.points == pytest.approx(2.5)
    assert not detect_points("keine Angabe").has_points


@pytest.mark.parametrize(
    "text,expected",
    [
        ("Beweisen Sie die Aussage.", "hard"),
        ("Nennen Sie zwei Gatter.", "easy"),
        ("Wandle 42 um. (2 Punkte)", "easy"),
        ("Wandle 42 um. (12 Punkte)", "hard"),
        ("Wandle 42 um.", "unknown"),
    ],
)
def test_estimate_difficulty(text, expected):
    assert estimate_difficulty(text) == expected
