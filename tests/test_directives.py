import pytest

from react_runtime.directives import (
    FinalAnswer,
    InvokeCapability,
    Malformed,
    argument_payload,
    parse_directive,
)

# ---------------------------------------------------------------------------
# TOOL: lines
# ---------------------------------------------------------------------------


def test_tool_line_extracts_name_and_argument():
    directive = parse_directive("I need to calculate.\nTOOL: calculator(2 + 2)")
    assert directive == InvokeCapability(name="calculator", argument="2 + 2")


def test_tool_mid_line_is_recognised():
    directive = parse_directive("I need to calculate. TOOL: calculator(2+2)")
    assert isinstance(directive, InvokeCapability)
    assert directive.argument == "2+2"


def test_first_tool_line_wins():
    response = "TOOL: calculator(1+1)\nTOOL: echo(hello)"
    directive = parse_directive(response)
    assert directive.name == "calculator"
    assert directive.argument == "1+1"


def test_tool_wins_over_earlier_answer():
    response = "ANSWER: probably 4\nTOOL: calculator(2+2)"
    assert isinstance(parse_directive(response), InvokeCapability)


def test_argument_spans_first_to_last_paren():
    directive = parse_directive("TOOL: calculator((1+2)*(3+4))")
    assert directive.argument == "(1+2)*(3+4)"


def test_unbalanced_parens_kept_verbatim():
    directive = parse_directive("TOOL: echo(a (b)")
    assert directive.argument == "a (b"


def test_tool_line_without_parens_is_not_a_tool():
    directive = parse_directive("TOOL: calculator\nsomething else")
    assert isinstance(directive, FinalAnswer)


def test_tool_prefix_is_case_sensitive():
    directive = parse_directive("tool: calculator(2+2)")
    assert isinstance(directive, FinalAnswer)


# ---------------------------------------------------------------------------
# ANSWER: lines and fallbacks
# ---------------------------------------------------------------------------


def test_answer_line():
    assert parse_directive("Thinking...\nANSWER: 4") == FinalAnswer(text="4")


def test_answer_keeps_following_lines():
    directive = parse_directive("ANSWER: line one\nline two")
    assert directive.text == "line one\nline two"


@pytest.mark.parametrize("text", ["4", "The result is 4", "multi\nline answer", "a (b) c"])
def test_answer_round_trip(text):
    assert parse_directive(f"ANSWER: {text}") == FinalAnswer(text=text)


def test_free_text_is_implicit_answer():
    assert parse_directive("  The answer is 4.  ") == FinalAnswer(text="The answer is 4.")


@pytest.mark.parametrize("text", ["", "   ", "\n\n\t"])
def test_blank_is_malformed(text):
    assert parse_directive(text) == Malformed(raw=text)


def test_parsing_is_idempotent():
    response = "Hmm.\nTOOL: echo(hi)"
    assert parse_directive(response) == parse_directive(response)


# ---------------------------------------------------------------------------
# Argument payloads
# ---------------------------------------------------------------------------


def test_json_object_argument_passes_through():
    assert argument_payload('{"path": "a.txt", "content": "x"}') == {"path": "a.txt", "content": "x"}


def test_plain_argument_is_wrapped():
    assert argument_payload("2 + 2") == {"input": "2 + 2"}


def test_broken_json_argument_is_wrapped():
    assert argument_payload("{broken: json}") == {"input": "{broken: json}"}


def test_json_array_argument_is_wrapped():
    assert argument_payload("[1, 2]") == {"input": "[1, 2]"}
