import pytest

from autopilot.errors import UniquenessError
from autopilot.schemas import BatchProgress, BrandVoice, SourceDocument
from autopilot.services import text_analysis
from autopilot.services.job_progress import record_outcome, round_percent, time_remaining
from autopilot.services.uniqueness import ensure_unique, uniqueness_score


def _doc(content="", title=""):
    return SourceDocument(url="https://example.com", title=title, content=content)


# ── Extractors ───────────────────────────────────────────────

def test_themes_rank_long_words_by_frequency():
    docs = [
        _doc("lighting lighting lighting camera camera albums"),
        _doc("albums albums lighting tiny words here"),
    ]
    themes = text_analysis.extract_themes(docs)
    assert themes[:3] == ["lighting", "albums", "camera"]
    assert "tiny" not in themes


def test_themes_skip_stop_words_and_cap_at_ten():
    words = " ".join(f"keyword{i} " * (20 - i) for i in range(15))
    themes = text_analysis.extract_themes([_doc(words + " should should should")])
    assert len(themes) == 10
    assert "should" not in themes
    assert themes[0] == "keyword0"


def test_best_practices_match_indicators():
    doc = _doc("You should scout early. Coffee is nice. It is important to rest! The key to success is light?")
    practices = text_analysis.extract_best_practices([doc])
    assert practices == ["You should scout early", "It is important to rest", "The key to success is light"]


def test_key_insights_take_long_leading_sentences():
    long = "This sentence is definitely longer than fifty characters in total length"
    doc = _doc(f"Short one. {long}. {long} again. {long} but fourth.")
    insights = text_analysis.extract_key_insights([doc])
    assert insights == [long, f"{long} again"]


def test_main_topic_from_titles_or_default():
    docs = [_doc(title="Wedding photography tips"), _doc(title="Wedding photography lighting")]
    assert text_analysis.extract_main_topic(docs) == "wedding photography tips"
    assert text_analysis.extract_main_topic([_doc(content="no title")]) == text_analysis.DEFAULT_TOPIC


def test_reading_time_rounds_up():
    assert text_analysis.reading_time_minutes("word " * 200) == 1
    assert text_analysis.reading_time_minutes("word " * 201) == 2
    assert text_analysis.count_words("  a  b c ") == 3


def test_context_prompt_mentions_audience_and_voice():
    docs = [_doc("It is recommended to shoot in raw format for wedding albums with plenty of light.")]
    prompt = text_analysis.build_context_prompt(docs, BrandVoice(tone="casual"), "Couples")
    assert "TARGET AUDIENCE: Couples" in prompt
    assert "- Tone: casual" in prompt
    assert "- It is recommended to shoot in raw format" in prompt


# ── Uniqueness ───────────────────────────────────────────────

def test_uniqueness_disjoint_and_identical():
    source = _doc("golden hour portraits outdoors")
    assert uniqueness_score("zebra quilting mountains", [source]) == 1.0
    assert uniqueness_score("golden hour portraits outdoors", [source]) == 0.0


def test_uniqueness_partial_overlap():
    source = _doc("golden hour portraits outdoors")
    # 4 source words longer than 3 chars, 1 shared
    assert uniqueness_score("golden zebra", [source]) == pytest.approx(0.75)


def test_uniqueness_without_source_words_is_one():
    assert uniqueness_score("anything at all", [_doc("a an to")]) == 1.0
    assert uniqueness_score("anything at all", []) == 1.0


def test_ensure_unique_raises_below_threshold():
    source = _doc("golden hour portraits outdoors")
    with pytest.raises(UniquenessError) as exc:
        ensure_unique("golden portraits", [source], 0.8)
    assert exc.value.score == pytest.approx(0.5)
    assert ensure_unique("zebra", [source], 0.8) == 1.0


# ── Progress ─────────────────────────────────────────────────

def test_round_percent_half_up():
    assert round_percent(1, 3) == 33
    assert round_percent(2, 3) == 67
    assert round_percent(1, 8) == 13
    assert round_percent(0, 0) == 100
    assert time_remaining(3) == "6 minutes"
    assert time_remaining(0) == ""


def test_record_outcome_refuses_overflow():
    progress = BatchProgress(total=1, processing=1)
    assert record_outcome(progress, success=True, success_attr="completed", was_processing=True) is True
    assert (progress.completed, progress.processing, progress.percentage) == (1, 0, 100)
    with pytest.raises(ValueError):
        record_outcome(progress, success=False, success_attr="completed", was_processing=False)
