"""
Ingress — Sanitizer Chain Unit Tests
======================================

What:  The three sanitizer passes and the stages that apply them.

Test Strategy:
    ✅ Reserved keys removed at any depth, siblings untouched
    ✅ Markup neutralized in string leaves only
    ✅ Repeated fields collapse to the last value unless whitelisted
    ✅ Every pass is idempotent
"""

import copy

import pytest

from ingress.middleware.sanitize import (
    ParameterPollutionStage,
    SanitizerStage,
    neutralize_scripts,
    resolve_pollution,
    strip_injection_keys,
)


class TestInjectionKeyStripping:
    """Removal of operator-prefixed keys."""

    def test_removes_top_level_operator_key(self):
        assert strip_injection_keys({"$where": "1 == 1", "name": "Forest"}) == {"name": "Forest"}

    def test_removes_nested_operator_keys_only(self):
        data = {"email": {"$gt": ""}, "password": "pass1234", "role": "user"}
        assert strip_injection_keys(data) == {"email": {}, "password": "pass1234", "role": "user"}

    def test_descends_into_lists(self):
        data = {"stops": [{"$ne": 1, "day": 2}, {"day": 3}]}
        assert strip_injection_keys(data) == {"stops": [{"day": 2}, {"day": 3}]}

    def test_records_removed_paths(self):
        removed = []
        strip_injection_keys({"a": {"$gt": 1}, "$or": []}, removed=removed)
        assert removed == ["a.$gt", "$or"]

    def test_dollar_inside_key_is_kept(self):
        data = {"price$": 5, "us$d": 1}
        assert strip_injection_keys(data) == data

    def test_dotted_keys_kept_by_default(self):
        assert strip_injection_keys({"a.b": 1}) == {"a.b": 1}

    def test_dotted_keys_stripped_when_enabled(self):
        assert strip_injection_keys({"a.b": 1, "c": 2}, strip_dotted=True) == {"c": 2}

    def test_leaves_input_unmodified(self):
        data = {"$gt": 1, "keep": {"$in": [1]}}
        original = copy.deepcopy(data)
        strip_injection_keys(data)
        assert data == original

    def test_idempotent(self):
        data = {"a": {"$gt": 1, "b": [{"$ne": 2, "c": 3}]}, "$x": 1, "d": "e"}
        once = strip_injection_keys(data)
        assert strip_injection_keys(once) == once

    def test_non_mapping_values_pass_through(self):
        assert strip_injection_keys("text") == "text"
        assert strip_injection_keys(None) is None


class TestScriptNeutralization:
    def test_escapes_script_tags(self):
        result = neutralize_scripts({"name": "<script>alert('x')</script>"})
        assert result == {"name": "&lt;script&gt;alert('x')&lt;/script&gt;"}
        assert "<" not in result["name"] and ">" not in result["name"]

    def test_escapes_attribute_injection(self):
        result = neutralize_scripts('<img src=x onerror="steal()">')
        assert result == '&lt;img src=x onerror="steal()"&gt;'

    def test_non_string_leaves_unchanged(self):
        data = {"price": 497, "rating": 4.5, "secret": False, "guide": None}
        assert neutralize_scripts(data) == data

    def test_nested_structures(self):
        data = {"stops": [{"note": "<b>bold</b>", "day": 1}]}
        assert neutralize_scripts(data) == {"stops": [{"note": "&lt;b&gt;bold&lt;/b&gt;", "day": 1}]}

    def test_ampersand_untouched(self):
        assert neutralize_scripts("Fish & Chips") == "Fish & Chips"

    def test_idempotent(self):
        once = neutralize_scripts({"a": "<script>x</script> & <b>"})
        assert neutralize_scripts(once) == once

    def test_records_changed_paths(self):
        changed = []
        neutralize_scripts({"a": "<b>", "b": "plain", "c": ["<i>"]}, changed)
        assert changed == ["a", "c[0]"]


class TestPollutionResolution:
    """Last-value-wins for repeated fields."""

    def test_last_value_wins(self):
        resolved, polluted = resolve_pollution({"difficulty": ["easy", "hard"]})
        assert resolved == {"difficulty": "hard"}
        assert polluted == {"difficulty": ["easy", "hard"]}

    def test_whitelisted_field_keeps_sequence(self):
        resolved, polluted = resolve_pollution({"difficulty": ["easy", "hard"]}, ["difficulty"])
        assert resolved == {"difficulty": ["easy", "hard"]}
        assert polluted == {}

    def test_scalars_untouched(self):
        resolved, polluted = resolve_pollution({"sort": "price", "page": "2"})
        assert resolved == {"sort": "price", "page": "2"}
        assert polluted == {}

    def test_empty_multi_value_dropped(self):
        resolved, _ = resolve_pollution({"tags": []})
        assert resolved == {}

    def test_nested_last_value_flattened(self):
        resolved, _ = resolve_pollution({"a": ["x", ["y", "z"]]})
        assert resolved == {"a": "z"}

    def test_idempotent(self):
        data = {"sort": ["price", "-ratingsAverage"], "price": ["1", "2"], "page": "1"}
        once, _ = resolve_pollution(data, ["price"])
        twice, polluted = resolve_pollution(once, ["price"])
        assert twice == once
        assert polluted == {}


class TestSanitizerStages:
    @pytest.mark.asyncio
    async def test_sanitizer_stage_cleans_query_and_body(self, make_envelope):
        envelope = make_envelope(b"name[$ne]=x&title=%3Cb%3E")
        envelope.set_body("json", b"{}", {"$where": "sleep(1000)", "summary": "<script>"})

        await SanitizerStage().process(envelope)

        assert envelope.query == {"name": {}, "title": "&lt;b&gt;"}
        assert envelope.body == {"summary": "&lt;script&gt;"}
        assert "removed body.$where" in envelope.sanitized
        assert "removed query.name.$ne" in envelope.sanitized

    @pytest.mark.asyncio
    async def test_sanitizer_stage_leaves_clean_request_alone(self, make_envelope):
        envelope = make_envelope(b"sort=price")
        await SanitizerStage().process(envelope)
        assert envelope.query == {"sort": "price"}
        assert envelope.sanitized == []

    @pytest.mark.asyncio
    async def test_sanitizer_stage_twice_changes_nothing(self, make_envelope):
        envelope = make_envelope(b"a[$gt]=1&b=%3Ci%3E")
        stage = SanitizerStage()
        await stage.process(envelope)
        first = copy.deepcopy(envelope.query)
        await stage.process(envelope)
        assert envelope.query == first

    @pytest.mark.asyncio
    async def test_pollution_stage_query(self, make_envelope):
        envelope = make_envelope(b"sort=price&sort=duration&difficulty=easy&difficulty=hard")
        await ParameterPollutionStage(whitelist=["difficulty"]).process(envelope)
        assert envelope.query == {"sort": "duration", "difficulty": ["easy", "hard"]}
        assert envelope.polluted == {"query": {"sort": ["price", "duration"]}}

    @pytest.mark.asyncio
    async def test_pollution_stage_ignores_json_body(self, make_envelope):
        envelope = make_envelope()
        envelope.set_body("json", b"", {"tags": ["a", "b"]})
        await ParameterPollutionStage().process(envelope)
        assert envelope.body == {"tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_pollution_stage_resolves_form_body(self, make_envelope):
        envelope = make_envelope()
        envelope.set_body("form", b"", {"name": ["a", "b"]})
        await ParameterPollutionStage().process(envelope)
        assert envelope.body == {"name": "b"}
        assert envelope.polluted["body"] == {"name": ["a", "b"]}
