import pytest

from conftest import EXERCISE_TEXT, SCRIPT_TEXT, ScriptedService, exercise_response, script_response
from engines.analysis_cache import AnalysisStorage, DocumentAnalyzer
from engines.extractor import ChunkExtractor
from engines.module_profile import (
    ModuleProfileBuilder,
    build_exam_style_profile,
    classify_task_type,
    weighted_coverage,
)
from schemas import (
    Document,
    DocumentAnalysisRecord,
    DocumentAnalysisV2,
    Exercise,
    HeuristicSignals,
    StyleSignals,
)


@pytest.fixture
def analysed_module(memory_store):
    storage = AnalysisStorage(memory_store)
    script = DocumentAnalyzer(storage, ChunkExtractor(ScriptedService(script_response())))
    exercise = DocumentAnalyzer(storage, ChunkExtractor(ScriptedService(exercise_response())))
    script.analyze_document(
        Document(document_id="skript-1", module_id="ti", document_type="script", text=SCRIPT_TEXT)
    )
    exercise.analyze_document(
        Document(
            document_id="blatt-1",
            module_id="ti",
            document_type="exercise",
            text=EXERCISE_TEXT,
            document_name="Übungsblatt 1",
        )
    )
    return storage


def _exam(question, points=None, difficulty="unknown", topics=("automat",), verbs=("zeichne",), mc=False):
    return DocumentAnalysisV2(
        document_type="exam",
        canonical_topics=list(topics),
        embedded_exercises=[
            Exercise(id="exercise-k-1", question_text=question, points=points, difficulty=difficulty, subtasks=["a)", "b)"])
        ],
        style_signals=StyleSignals(imperative_verbs=list(verbs)),
        heuristic_signals=HeuristicSignals(uses_multiple_choice=mc),
    )


def test_knowledge_index_links_topics_to_documents_and_items(analysed_module):
    profile = ModuleProfileBuilder(analysed_module).build_module_profiles("ti")

    index = profile.knowledge_index
    assert index.canonical_topics == ["kv-diagramm", "zweierkomplement"]
    assert index.topic_frequency == {"kv-diagramm": 2, "zweierkomplement": 2}
    assert index.topic_display_names["kv-diagramm"] == "KV-Diagramm"
    assert "Karnaugh-Veitch" in index.topic_synonyms["kv-diagramm"]

    entry = index.topic_index["kv-diagramm"]
    assert [ref.document_id for ref in entry.documents] == ["skript-1", "blatt-1"]
    assert entry.documents[1].document_name == "Übungsblatt 1"
    assert "concept-skript-1-1" in entry.concept_ids
    assert entry.exercise_ids == ["exercise-blatt-1-2"]
    assert index.topic_index["zweierkomplement"].exercise_ids == ["exercise-blatt-1-1"]
    assert index.source_document_count == 2


def test_exercise_style_profile(analysed_module):
    profile = ModuleProfileBuilder(analysed_module).build_module_profiles("ti")

    style = profile.exercise_style_profile
    assert {verb.verb for verb in style.verbs} == {"berechne", "minimiere", "bestimme"}
    assert style.structure.uses_letter_subtasks
    assert style.structure.points_usage.uses_points
    assert style.structure.points_usage.avg_points == 4.0
    assert [archetype.id for archetype in style.task_archetypes] == ["archetype-kv-diagramm"]
    assert style.task_archetypes[0].source_evidence_ids == ["exercise-blatt-1-2"]
    assert "kvDiagram" in style.answer_formats.frequencies
    assert style.notation_conventions.boolean_operators == ["∧", "∨"]


def test_exam_style_is_inferred_from_exercises(analysed_module):
    profile = ModuleProfileBuilder(analysed_module).build_module_profiles("ti")

    exam = profile.exam_style_profile
    assert exam.overall_confidence == "low"
    assert exam.inferred_from_exercises
    assert exam.source_exam_count == 0
    assert exam.source_exercise_count == 1
    assert {topic.source for topic in exam.covered_topics} == {"inferred-from-exercises"}
    assert profile.coverage_percent == 100


def test_profile_is_cached_until_sources_change(analysed_module):
    builder = ModuleProfileBuilder(analysed_module)
    first = builder.build_module_profiles("ti")

    assert builder.build_module_profiles("ti").last_built_at == first.last_built_at

    record = analysed_module.get_document_analysis("ti", "skript-1")
    analysed_module.upsert_document_analysis(record.model_copy(update={"source_hash": "changed"}))
    rebuilt = builder.build_module_profiles("ti")

    assert rebuilt.source_hash_aggregate != first.source_hash_aggregate
    assert rebuilt.created_at == first.created_at


def test_invalidate_forces_rebuild(analysed_module):
    builder = ModuleProfileBuilder(analysed_module)
    assert builder.invalidate_module_profile("ti") is None

    first = builder.build_module_profiles("ti")
    invalidated = builder.invalidate_module_profile("ti")

    assert invalidated.status == "queued"
    assert invalidated.source_hash_aggregate == ""
    rebuilt = builder.build_module_profiles("ti")
    assert rebuilt.status == "done"
    assert rebuilt.source_hash_aggregate == first.source_hash_aggregate


def test_profile_version_change_rebuilds(analysed_module):
    ModuleProfileBuilder(analysed_module).build_module_profiles("ti")

    rebuilt = ModuleProfileBuilder(analysed_module, profile_version="3.0.0").build_module_profiles("ti")

    assert rebuilt.profile_version == "3.0.0"


def test_empty_module_has_empty_profile(memory_store):
    profile = ModuleProfileBuilder(AnalysisStorage(memory_store)).build_module_profiles("leer")

    assert profile.status == "done"
    assert profile.knowledge_index.canonical_topics == []
    assert profile.exam_style_profile.overall_confidence == "low"
    assert not profile.exam_style_profile.inferred_from_exercises
    assert profile.coverage_percent == 0


def test_exam_confidence_grows_with_exam_count():
    one = build_exam_style_profile([_exam("Zeichne den Automaten. (10 Punkte)", points=10.0)], [])
    three = build_exam_style_profile([_exam("Zeichne x.", points=4.5)] * 3, [])

    assert one.overall_confidence == "medium"
    assert three.overall_confidence == "high"
    assert one.covered_topics[0].source == "exam"
    assert one.covered_topics[0].confidence == "high"
    assert three.scoring.uses_half_points
    assert three.scoring.total_points_typical == pytest.approx(4.5)


def test_exam_profile_reads_operators_and_formatting():
    exam = _exam(
        "Zeichne den Automaten für die Sprache L. (12 Punkte)",
        points=12.0,
        difficulty="hard",
        verbs=("Zeichne",),
        mc=True,
    )

    profile = build_exam_style_profile([exam], [])

    assert profile.operators[0].operator == "Zeichne"
    assert profile.operators[0].examples == ["Zeichne den Automaten für die Sprache L. (12 Punkte)"]
    assert profile.task_types.types[0].type == "zeichnung"
    assert profile.task_types.types[0].typical_points == 12
    assert profile.subtask_pattern.pattern_type == "letter"
    assert profile.formatting_rules.uses_multiple_choice
    assert profile.difficulty_mix.hard == 100


def test_exam_profile_defaults_without_sources():
    profile = build_exam_style_profile([], [])

    assert profile.scoring.average_points_per_task == 10.0
    assert profile.scoring.min_points == 1.0
    assert profile.scoring.max_points == 20.0
    assert (profile.difficulty_mix.easy, profile.difficulty_mix.medium, profile.difficulty_mix.hard) == (33, 34, 33)


def test_classify_task_type():
    assert classify_task_type("Berechne die Summe") == "berechnung"
    assert classify_task_type("Beweise die Aussage") == "beweis"
    assert classify_task_type("Was ist ein Bus?") == "allgemein"


def test_weighted_coverage_counts_scripts_twice():
    records = [
        DocumentAnalysisRecord(id="m:s", module_id="m", document_id="s", document_type="script", coverage_percent=100),
        DocumentAnalysisRecord(id="m:e", module_id="m", document_id="e", document_type="exercise", coverage_percent=40),
    ]

    assert weighted_coverage(records) == 80
    assert weighted_coverage([]) == 0
