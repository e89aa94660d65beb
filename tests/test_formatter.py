"""
Tests for line filtering, JSON rendering and color assignment
"""

import pytest

from podtail.formatter import ColorRegistry, LogLineFormatter, get_pretty_json, maybe_parse_json
from podtail.models import FormattingPolicy, PodIdentity


class TestJsonHelpers:

    def test_maybe_parse_json_valid(self):
        value = maybe_parse_json('{"msg":"hello","ts":"2025-07-28T12:34:56Z"}')
        assert value["msg"] == "hello"
        assert value["ts"] == "2025-07-28T12:34:56Z"

    def test_maybe_parse_json_invalid(self):
        assert maybe_parse_json("this is not json") is None

    def test_pretty_json_standard_fields(self):
        value = {"timestamp": "2025-07-28T12:00:00Z", "message": "Started up", "level": "info"}
        assert get_pretty_json(value).plain == "[info] 2025-07-28T12:00:00Z: Started up"

    def test_pretty_json_alt_fields(self):
        value = {"ts": "2025-07-28T12:01:00Z", "msg": "Service healthy", "lvl": "debug"}
        assert get_pretty_json(value).plain == "[debug] 2025-07-28T12:01:00Z: Service healthy"

    def test_pretty_json_log_field_defaults_level(self):
        value = {"log": "Request received", "time": "2025-07-28T12:02:00Z"}
        assert get_pretty_json(value).plain == "[INFO] 2025-07-28T12:02:00Z: Request received"

    def test_pretty_json_missing_all_fields(self):
        assert get_pretty_json({"foo": "bar"}).plain == "[INFO] no-ts: no-msg"

    def test_pretty_json_colors_level(self):
        text = get_pretty_json({"level": "error", "msg": "boom"})
        assert any("red" in str(span.style) for span in text.spans)


class TestLogLineFormatter:

    def test_filter_keeps_matching_lines(self):
        formatter = LogLineFormatter(FormattingPolicy(filter_text="ERROR"))
        assert formatter.render("ERROR boom").plain == "ERROR boom"

    def test_filter_drops_other_lines(self):
        formatter = LogLineFormatter(FormattingPolicy(filter_text="ERROR"))
        assert formatter.render("INFO start") is None

    def test_filter_is_case_sensitive(self):
        formatter = LogLineFormatter(FormattingPolicy(filter_text="ERROR"))
        assert formatter.render("error boom") is None

    def test_no_filter_passes_everything(self):
        formatter = LogLineFormatter(FormattingPolicy())
        assert formatter.render("").plain == ""
        assert formatter.render("anything").plain == "anything"

    @pytest.mark.parametrize("line", [
        "plain text line",
        "[not json] {broken",
        "{\"unterminated\": ",
    ])
    def test_non_json_line_passes_through_in_json_mode(self, line):
        formatter = LogLineFormatter(FormattingPolicy(json_format=True))
        assert formatter.render(line).plain == line

    def test_json_object_is_summarized(self):
        formatter = LogLineFormatter(FormattingPolicy(json_format=True))
        rendered = formatter.render('{"level":"warn","ts":"t1","msg":"disk low"}')
        assert rendered.plain == "[warn] t1: disk low"

    def test_json_mode_off_leaves_json_untouched(self):
        line = '{"level":"warn","msg":"disk low"}'
        formatter = LogLineFormatter(FormattingPolicy(json_format=False))
        assert formatter.render(line).plain == line

    def test_filter_applies_to_raw_line_before_json(self):
        formatter = LogLineFormatter(FormattingPolicy(filter_text="request_id", json_format=True))
        rendered = formatter.render('{"msg":"handled","request_id":"abc"}')
        assert rendered is not None
        assert rendered.plain == "[INFO] no-ts: handled"

    def test_markup_in_lines_is_not_interpreted(self):
        formatter = LogLineFormatter(FormattingPolicy())
        assert formatter.render("[bold]not bold[/bold]").plain == "[bold]not bold[/bold]"


class TestColorRegistry:

    def test_colors_are_round_robin_on_first_sight(self):
        colors = ColorRegistry(("red", "green"))
        assert colors.color_for(PodIdentity("ns", "a")) == "red"
        assert colors.color_for(PodIdentity("ns", "b")) == "green"
        assert colors.color_for(PodIdentity("ns", "c")) == "red"

    def test_color_is_stable_per_pod(self):
        colors = ColorRegistry(("red", "green", "blue"))
        first = colors.color_for(PodIdentity("ns", "a"))
        colors.color_for(PodIdentity("ns", "b"))
        assert colors.color_for(PodIdentity("ns", "a")) == first
        assert len(colors) == 2

    def test_empty_palette_rejected(self):
        with pytest.raises(ValueError):
            ColorRegistry(())
