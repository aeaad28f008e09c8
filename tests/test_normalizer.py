from normalizer import (
    compute_aggregate_hash,
    compute_source_hash,
    has_valid_evidence,
    normalize_text_for_hash,
    strip_punctuation,
    tokenize,
    truncate_snippet,
)

SOURCE = "Das Zweierkomplement entsteht durch Invertieren aller Bits und Addition von eins."


def test_source_hash_ignores_whitespace_layout():
    assert compute_source_hash("Aufgabe 1:\n\n  Berechne  x.") == compute_source_hash("Aufgabe 1: Berechne x.")
    assert compute_source_hash("Aufgabe 1") != compute_source_hash("Aufgabe 2")


def test_source_hash_is_unicode_normalised():
    decomposed = "Lo\u0308sung"
    composed = "L\u00f6sung"

    assert normalize_text_for_hash(decomposed) == composed
    assert compute_source_hash(decomposed) == compute_source_hash(composed)


def test_aggregate_hash_is_order_independent():
    hashes = [compute_source_hash(text) for text in ("a", "b", "c")]

    assert compute_aggregate_hash(hashes) == compute_aggregate_hash(reversed(hashes))
    assert compute_aggregate_hash(hashes) != compute_aggregate_hash(hashes[:2])


def test_tokenize_drops_punctuation_and_single_characters():
    assert tokenize("Berechne: f(x) = a ∧ b!") == ["berechne"]
    assert strip_punctuation("a,b") == "a b"
    assert tokenize("") == []


def test_evidence_found_in_source():
    assert has_valid_evidence("Invertieren aller Bits und Addition", SOURCE)
    assert has_valid_evidence("INVERTIEREN ALLER BITS", SOURCE)


def test_evidence_tolerates_minor_drift():
    # four of five qualifying words match, ceil(5 * 0.6) = 3
    assert has_valid_evidence("Zweierkomplement entsteht durch Negieren aller", SOURCE)


def test_fabricated_evidence_is_rejected():
    assert not has_valid_evidence("Quantencomputer verschränken Qubits miteinander", SOURCE)
    assert not has_valid_evidence("", SOURCE)


def test_evidence_without_long_words_passes():
    assert has_valid_evidence("a b c", SOURCE)


def test_truncate_snippet_limits_length():
    assert len(truncate_snippet("x" * 500)) == 200
    assert truncate_snippet(None) == ""
