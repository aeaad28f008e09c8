import pytest

from chunker import ChunkingConfig, chunk_document, chunk_text


def _document(sentences: int) -> str:
    return " ".join(f"Satz Nummer {i} beschreibt ein Gatter." for i in range(sentences))


def _assert_covers(text, chunks):
    assert chunks[0].start_pos == 0
    assert chunks[-1].end_pos == len(text)
    for previous, current in zip(chunks, chunks[1:]):
        # no gap between neighbours
        assert current.start_pos <= previous.end_pos
        assert current.start_pos > previous.start_pos
    for chunk in chunks:
        assert chunk.text == text[chunk.start_pos:chunk.end_pos]


def test_short_text_is_single_chunk():
    chunks = chunk_text("Kurzer Text.", max_chars=100, overlap=10)

    assert len(chunks) == 1
    assert chunks[0].index == 0
    assert chunks[0].text == "Kurzer Text."


def test_empty_text_is_single_empty_chunk():
    chunks = chunk_text("", max_chars=100, overlap=10)

    assert [(c.start_pos, c.end_pos, c.text) for c in chunks] == [(0, 0, "")]


def test_long_text_is_covered_without_gaps():
    text = _document(60)

    chunks = chunk_text(text, max_chars=300, overlap=40)

    assert len(chunks) > 1
    assert [chunk.index for chunk in chunks] == list(range(len(chunks)))
    assert all(len(chunk.text) <= 300 for chunk in chunks)
    _assert_covers(text, chunks)


def test_chunks_end_on_sentence_boundaries():
    text = _document(60)

    chunks = chunk_text(text, max_chars=300, overlap=40)

    for chunk in chunks[:-1]:
        assert chunk.text.endswith(".")


def test_consecutive_chunks_overlap():
    text = _document(60)

    chunks = chunk_text(text, max_chars=300, overlap=40)

    for previous, current in zip(chunks, chunks[1:]):
        assert previous.end_pos - current.start_pos == 40


def test_text_without_sentence_ends_is_cut_hard():
    text = "x" * 250

    chunks = chunk_text(text, max_chars=100, overlap=0)

    assert [(c.start_pos, c.end_pos) for c in chunks] == [(0, 100), (100, 200), (200, 250)]


def test_overlap_that_would_stall_still_advances():
    text = "y" * 50

    chunks = chunk_text(text, max_chars=10, overlap=10)

    _assert_covers(text, chunks)
    assert len(chunks) == 5


@pytest.mark.parametrize("max_chars,overlap", [(0, 0), (-5, 0), (100, -1)])
def test_invalid_configuration_is_rejected(max_chars, overlap):
    with pytest.raises(ValueError):
        chunk_text("text", max_chars=max_chars, overlap=overlap)


def test_chunking_config_from_env(monkeypatch):
    monkeypatch.setenv("CHUNK_MAX_CHARS", "800")
    monkeypatch.setenv("CHUNK_OVERLAP", "50")

    config = ChunkingConfig.from_env()

    assert config == ChunkingConfig(max_chars=800, overlap=50)
    assert len(chunk_document(_document(40), config)) > 1
