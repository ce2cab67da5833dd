import pytest

from featurespec import (
    Directive,
    ParseError,
    Step,
    parse_feature,
    parse_feature_file,
    split_payload,
)

FEATURE = """\
# top comment
Feature: Counter

  @serial
  Scenario: init
    Then cmd: "account create"
    # check it
    Then assert: "{{$.account[-1].address}} == 0x0001"

  Scenario: server
    Given the server
    Given a server for rpc_test
    Then sleep: "0.1"
    Then stop the server
"""


def test_parses_feature_tree():
    feature = parse_feature(FEATURE)

    assert feature.name == "Counter"
    assert feature.comments == ("top comment",)
    assert [s.name for s in feature.scenarios] == ["init", "server"]

    init = feature.scenarios[0]
    assert init.tags == ("serial",)
    assert init.line_number == 5
    assert init.steps == (
        Step("Then", Directive.CMD, "account create", 6),
        Step("#", Directive.COMMENT, "check it", 7),
        Step("Then", Directive.ASSERT, "{{$.account[-1].address}} == 0x0001", 8),
    )

    server = feature.scenarios[1]
    assert server.tags == ()
    assert [s.directive for s in server.steps] == [
        Directive.SERVER_START,
        Directive.SERVER_START,
        Directive.SLEEP,
        Directive.SERVER_STOP,
    ]
    assert server.steps[1].text == "rpc_test"


def test_parsing_is_deterministic():
    assert parse_feature(FEATURE) == parse_feature(FEATURE)


def test_step_to_str_reproduces_source_lines():
    feature = parse_feature(FEATURE)
    lines = [s.to_str() for sc in feature.scenarios for s in sc.steps]

    assert lines == [
        'Then cmd: "account create"',
        "# check it",
        'Then assert: "{{$.account[-1].address}} == 0x0001"',
        "Given the server",
        "Given a server for rpc_test",
        'Then sleep: "0.1"',
        "Then stop the server",
    ]


def test_payload_keeps_embedded_quotes():
    feature = parse_feature(
        "Feature: f\n"
        "Scenario: import\n"
        '  Then cmd: "account import --mnemonic-phrase "abandon ability able""\n'
    )
    step = feature.scenarios[0].steps[0]

    assert step.text == 'account import --mnemonic-phrase "abandon ability able"'
    assert split_payload(step.text) == [
        "account",
        "import",
        "--mnemonic-phrase",
        "abandon ability able",
    ]


def test_payload_keeps_json_argument():
    feature = parse_feature(
        "Feature: f\n"
        "Scenario: rpc\n"
        """  Then cmd: "rpc request --params '["/resource",{"decode":true}]'"\n"""
    )
    tokens = split_payload(feature.scenarios[0].steps[0].text)

    assert tokens == ["rpc", "request", "--params", '["/resource",{"decode":true}]']


def test_when_and_and_keywords_are_steps():
    feature = parse_feature(
        'Feature: f\nScenario: s\n  When cmd: "a"\n  And assert: "1 == 1"\n'
    )

    assert [s.keyword for s in feature.scenarios[0].steps] == ["When", "And"]


@pytest.mark.parametrize(
    "text, line_number, message",
    [
        ("Feature: f\nScenario: s\n  Then run: \"x\"\n", 3, "Unknown step"),
        ("Feature: f\nScenario: s\n  something else\n", 3, "Unknown line"),
        ('Feature: f\nScenario: s\n  Then cmd: "a "b"\n', 3, "Unbalanced quotes"),
        ("Feature: f\nScenario: s\n  Then cmd: a\n", 3, "double-quoted"),
        ('Feature: f\nScenario: s\n  Then cmd: "  "\n', 3, "Empty payload"),
        ('Feature: f\nScenario: s\n  Then assert: "a =~ b"\n', 3, "Unknown operator"),
        ('Feature: f\nScenario: s\n  Then assert: "a =="\n', 3, "triples"),
        ('Feature: f\nScenario: s\n  Then sleep: "soon"\n', 3, "Invalid sleep"),
        ("Feature: f\n\nScenario:\n", 3, "Scenario name is required"),
        ('Feature: f\n  Then cmd: "a"\n', 2, "outside of a scenario"),
        ("Scenario: s\n", 1, "before 'Feature:'"),
        ("Feature: f\nFeature: g\n", 2, "Only one"),
        ("Feature: f\nScenario: s\n@dangling\n", 3, "not followed by a scenario"),
    ],
)
def test_parse_errors_carry_line_numbers(text, line_number, message):
    with pytest.raises(ParseError) as excinfo:
        parse_feature(text, "bad.feature")

    assert excinfo.value.line_number == line_number
    assert message in excinfo.value.message
    assert str(excinfo.value).startswith(f"bad.feature:{line_number}: ")


@pytest.mark.parametrize("text", ["", "# only a comment\n", "Feature: empty\n"])
def test_feature_without_scenarios_is_an_error(text):
    with pytest.raises(ParseError):
        parse_feature(text)


def test_parse_feature_file_records_path(write_feature):
    path = write_feature('Feature: f\nScenario: s\n  Then cmd: "echo hi"\n')

    feature = parse_feature_file(path)

    assert feature.path == str(path)
    assert feature.scenarios[0].steps[0].text == "echo hi"
