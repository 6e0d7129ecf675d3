"""Tests for output marker framing and the incremental parser."""

import pytest
from pydantic import ValidationError

from flotilla.protocol import (
    OUTPUT_END_MARKER,
    OUTPUT_START_MARKER,
    MarkerParser,
    parse_final_output,
    wrap_output,
)
from flotilla.schemas import ContainerOutput


def _parse_all(stream: str, chunk_size: int) -> list[ContainerOutput]:
    parser = MarkerParser()
    outputs = []
    for i in range(0, len(stream), chunk_size):
        for payload in parser.feed(stream[i:i + chunk_size]):
            outputs.append(ContainerOutput.model_validate_json(payload))
    return outputs


class TestWrapOutput:

    def test_wrapped_layout(self):
        text = wrap_output(ContainerOutput(status="success", result="hi"))
        lines = text.splitlines()
        assert lines[0] == OUTPUT_START_MARKER
        assert lines[-1] == OUTPUT_END_MARKER
        assert '"result": "hi"' in lines[1]

    def test_null_result_is_explicit(self):
        text = wrap_output(ContainerOutput(status="success"))
        assert '"result": null' in text

    def test_marker_inside_result_is_escaped(self):
        output = ContainerOutput(status="success", result=f"look: {OUTPUT_END_MARKER} done")
        text = wrap_output(output)
        # Only the framing markers remain literal
        assert text.count(OUTPUT_END_MARKER) == 1
        assert _parse_all(text, 7) == [output]


class TestMarkerParser:

    @pytest.mark.parametrize("chunk_size", [1, 3, 16, 1000])
    def test_round_trip_across_chunk_boundaries(self, chunk_size):
        outputs = [
            ContainerOutput(status="success", result="first", conversation_id="c1"),
            ContainerOutput(status="success", result="multi\nline ✓ unicode"),
            ContainerOutput(status="error", error="boom"),
        ]
        stream = "log noise\n" + "".join(wrap_output(o) + "more noise\n" for o in outputs)
        assert _parse_all(stream, chunk_size) == outputs

    def test_noise_only_yields_nothing(self):
        parser = MarkerParser()
        assert parser.feed("just some logging\n" * 50) == []

    def test_incomplete_payload_waits_for_end(self):
        parser = MarkerParser()
        assert parser.feed(f"{OUTPUT_START_MARKER}\n{{\"status\": ") == []
        assert parser.feed(f'"success"}}\n{OUTPUT_END_MARKER}\n') == ['{"status": "success"}']

    def test_oversized_payload_dropped(self):
        parser = MarkerParser(max_payload=1024)
        assert parser.feed(f"{OUTPUT_START_MARKER}\n") == []
        for _ in range(64):
            assert parser.feed("x" * 4096) == []
        assert len(parser._buffer) <= len(OUTPUT_START_MARKER)
        assert parser.dropped == 1

    def test_scanning_resumes_after_dropped_payload(self):
        parser = MarkerParser(max_payload=100)
        parser.feed(f"{OUTPUT_START_MARKER}\n" + "x" * 500)
        payloads = parser.feed("x" * 50 + f"\n{OUTPUT_END_MARKER}\n")
        payloads += parser.feed(f'{OUTPUT_START_MARKER}\n{{"status": "success"}}\n{OUTPUT_END_MARKER}\n')
        assert payloads == ['{"status": "success"}']

    def test_split_start_marker(self):
        parser = MarkerParser()
        assert parser.feed("xx" + OUTPUT_START_MARKER[:10]) == []
        payloads = parser.feed(OUTPUT_START_MARKER[10:] + '\n{"status": "success"}\n' + OUTPUT_END_MARKER)
        assert payloads == ['{"status": "success"}']


class TestParseFinalOutput:

    def test_last_marker_pair_wins(self):
        stdout = (
            wrap_output(ContainerOutput(status="success", result="one"))
            + wrap_output(ContainerOutput(status="success", result="two"))
        )
        assert parse_final_output(stdout).result == "two"

    def test_falls_back_to_last_line(self):
        stdout = 'starting\n{"status": "success", "result": "plain"}\n\n'
        assert parse_final_output(stdout).result == "plain"

    def test_empty_stdout_raises(self):
        with pytest.raises(ValueError, match="No output"):
            parse_final_output("  \n")

    def test_garbage_raises_validation_error(self):
        with pytest.raises(ValidationError):
            parse_final_output("not json at all")
