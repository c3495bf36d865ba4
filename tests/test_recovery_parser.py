"""Tests for the cascade parser that recovers JSON from model output."""

import json

from app.core.metrics import MetricsRecorder
from app.core.recovery_parser import (
    RecoveryParser,
    is_valid_structure,
    normalize_quotes,
    preprocess,
    trim_to_container,
)


def test_strict_json():
    parser = RecoveryParser()
    assert parser.parse('{"name": "Toolshed", "features": 3}') == {"name": "Toolshed", "features": 3}
    assert parser.stats()["strict"]["success"] == 1


def test_fenced_block_with_prose():
    parser = RecoveryParser()
    raw = 'Sure! Here is the plan:\n```json\n{"a": 1, "b": [1, 2]}\n```\nLet me know if you need more.'

    assert parser.parse(raw) == {"a": 1, "b": [1, 2]}
    assert parser.stats()["fenced_block"]["success"] == 1


def test_bracket_span_with_trailing_commentary():
    raw = 'The result is {"status": "ok", "items": [1, 2]} and that is all.'
    assert RecoveryParser().parse(raw) == {"status": "ok", "items": [1, 2]}


def test_top_level_array():
    raw = 'Tasks: [{"id": 1}, {"id": 2}] done'
    assert RecoveryParser().parse(raw) == [{"id": 1}, {"id": 2}]


def test_fuzzy_repair_of_js_style_object():
    raw = "{name: 'Toolshed', active: True, archived: False, tags: ['a', 'b',],}"

    result = RecoveryParser().parse(raw)

    assert result == {"name": "Toolshed", "active": True, "archived": False, "tags": ["a", "b"]}


def test_fuzzy_repair_leaves_string_contents_alone():
    raw = '{"note": "True story, None left", count: 2,}'

    result = RecoveryParser().parse(raw)

    assert result == {"note": "True story, None left", "count": 2}


def test_truncated_object_is_closed():
    raw = '{"a": 1, "b": {"c": [1, 2'
    result = RecoveryParser().parse(raw)

    assert result == {"a": 1, "b": {"c": [1, 2]}}


def test_truncated_inside_string_is_closed():
    raw = '{"summary": "A tool lending app for neigh'
    result = RecoveryParser().parse(raw)

    assert result == {"summary": "A tool lending app for neigh"}


def test_truncated_after_key_keeps_completed_pairs():
    result = RecoveryParser().parse('{"a": 1, "b": ')

    assert result["a"] == 1
    assert set(result) <= {"a", "b"}


def test_trim_to_container_drops_text_after_matching_closer():
    assert trim_to_container('prefix {"a": [1]} suffix {') == '{"a": [1]}'
    assert trim_to_container('{"a": [1, 2') == '{"a": [1, 2'
    assert trim_to_container("no brackets") is None


def test_key_value_lines():
    raw = "name: Toolshed\ncount: 3\nratio: 0.5\nenabled: true\nwebsite: 'toolshed.app'"

    result = RecoveryParser().parse(raw)

    assert result == {
        "name": "Toolshed",
        "count": 3,
        "ratio": 0.5,
        "enabled": True,
        "website": "toolshed.app",
    }
    assert isinstance(result["count"], int)


def test_fallback_is_returned_as_copy():
    fallback = {"items": []}
    parser = RecoveryParser()

    result = parser.parse("no structure here at all", fallback=fallback)

    assert result == fallback
    assert result is not fallback
    result["items"].append(1)
    assert fallback == {"items": []}
    assert parser.stats()["fallback"]["count"] == 1


def test_error_marker_without_fallback():
    result = RecoveryParser().parse("", context="analysis")

    assert result["fallback"] is True
    assert result["context"] == "analysis"
    assert result["error"] == "JSON parsing failed"
    assert "generated_at" in result


def test_none_input_never_raises():
    assert RecoveryParser().parse(None)["fallback"] is True


def test_empty_structures_are_not_accepted():
    assert is_valid_structure({}) is False
    assert is_valid_structure([]) is False
    assert is_valid_structure("text") is False
    assert RecoveryParser().parse("{}", fallback={"x": 1}) == {"x": 1}


def test_preprocess_strips_invisible_characters_and_line_endings():
    raw = "\ufeff{\"a\":\t1}\r\n"
    assert preprocess(raw) == '{"a":  1}'


def test_normalize_quotes():
    assert normalize_quotes("\u201cname\u201d: \u2018x\u2019") == "\"name\": 'x'"


def test_curly_quoted_json_parses():
    raw = "\u201cname\u201d: \u201cToolshed\u201d"
    assert RecoveryParser().parse("{" + raw + "}") == {"name": "Toolshed"}


def test_strategy_exception_is_recorded_as_failure():
    def exploding(_text):
        raise RuntimeError("boom")

    def working(text):
        return json.loads(text), True

    parser = RecoveryParser(strategies=[("exploding", exploding), ("working", working)])

    assert parser.parse('{"a": 1}') == {"a": 1}
    stats = parser.stats()
    assert stats["exploding"]["failure"] == 1
    assert stats["working"]["success"] == 1


def test_parse_events_are_recorded():
    metrics = MetricsRecorder()
    parser = RecoveryParser(metrics=metrics)
    parser.parse('{"a": 1}')
    parser.parse("nothing")

    assert metrics.count("json_parse_success") == 1
    assert metrics.count("json_parse_fallback") == 1


def test_reset_stats():
    parser = RecoveryParser()
    parser.parse('{"a": 1}')
    parser.reset_stats()
    assert parser.stats() == {}



def test_valid_json_with_typographic_quotes_in_values_round_trips():
    clean = {"summary": "Users call it the “swap shelf”", "owner": "Dana’s team", "n": 2}
    parser = RecoveryParser()

    result = parser.parse(json.dumps(clean, ensure_ascii=False))

    assert result == clean
    assert parser.stats()["strict"]["success"] == 1


def test_fenced_block_with_trailing_comma():
    assert RecoveryParser().parse('```json\n{"a":1,}\n```') == {"a": 1}


def test_garbled_variants_match_clean_payload():
    clean = {"name": "Toolshed", "tags": ["tools", "sharing"]}
    variants = [
        '```json\n{"name": "Toolshed", "tags": ["tools", "sharing"],}\n```',
        "{“name”: “Toolshed”, “tags”: [“tools”, “sharing”]}",
        "Here you go: {'name': 'Toolshed', 'tags': ['tools', 'sharing']} hope it helps",
    ]
    parser = RecoveryParser()

    for raw in variants:
        assert parser.parse(raw) == clean
