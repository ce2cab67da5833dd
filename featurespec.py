#!/usr/bin/env python3

import argparse
import json
import operator
import os
import re
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import pexpect
from pexpect.popen_spawn import PopenSpawn


class T:
    """Terminal color helper with ANSI escape sequences."""

    red, green, blue, yellow, grey, bold, clear = (
        "\033[31m",
        "\033[32m",
        "\033[34m",
        "\033[33m",
        "\033[90m",
        "\033[1m",
        "\033[0m",
    )


# Category aliases for result history
# Maps a command's first token to the category its output is recorded under
CATEGORY_ALIASES: dict[str, str] = {}

# Global verbose flag
verbose = False

# Timeout for a single command invocation (in seconds)
COMMAND_TIMEOUT = 30

# Timeout for the background server to become ready (in seconds)
READY_TIMEOUT = 60
READY_POLL_INTERVAL = 0.2

# Time the server gets to exit after SIGTERM before it is killed
STOP_GRACE_PERIOD = 5

# Read size used when discarding background server output
DRAIN_CHUNK_SIZE = 65536

DEFAULT_SERVER_ARGS = ("server", "start")
DEFAULT_SERVER_READY = "listening"


class HarnessError(Exception):
    """Base class for every error the harness reports."""


class ParseError(HarnessError):
    """Malformed feature text. Fatal for the whole run."""

    def __init__(self, message: str, line_number: int = 0, path: str = ""):
        self.message = message
        self.line_number = line_number
        self.path = path
        super().__init__(str(self))

    def __str__(self) -> str:
        location = self.path or "<feature>"
        if self.line_number:
            location = f"{location}:{self.line_number}"
        return f"{location}: {self.message}"


class StepError(HarnessError):
    """An error that fails the current step and its scenario only."""


class UndefinedVariableError(StepError):
    pass


class PathResolutionError(StepError):
    pass


class ExecutionError(StepError):
    pass


class AssertionFailure(StepError):
    pass


class StepTimeoutError(StepError):
    pass


def get_terminal_width():
    """Get the terminal width, with fallback."""
    try:
        return os.get_terminal_size().columns
    except OSError:
        return 80  # fallback width if terminal size can't be determined


def print_horizontal_rule():
    """Print a horizontal rule spanning the terminal width."""
    width = get_terminal_width()
    print(f"{T.grey}{'─' * width}{T.clear}")


def print_with_left_border(text, border_char="│", border_color=None, text_color=None):
    """Print text with a left border, wrapping lines to terminal width."""
    width = get_terminal_width()
    border_prefix = f"{border_color or ''}{border_char}{T.clear} {text_color or ''}"
    content_width = max(width - len(border_char) - 1, 1)

    for line in text.split("\n"):
        if not line.strip():
            print(f"{border_prefix}{T.clear}")
            continue
        while line:
            chunk = line[:content_width]
            line = line[content_width:]
            print(f"{border_prefix}{chunk}{T.clear}")


def show_variable_values(values_dict):
    """Show resolved values with grey indentation like command output."""
    for var_name, var_value in values_dict.items():
        print_with_left_border(
            f'{var_name}: "{var_value}"',
            border_color=T.grey,
            text_color=T.grey,
        )


def verbose_check(description, condition, variables=None):
    """Print check description and result, return condition value."""
    if condition:
        print(f"{T.green}▸ {description} ✓{T.clear}")
    else:
        print(f"{T.red}▸ {description} ✗{T.clear}")

    if variables:
        show_variable_values(variables)

    return condition


class Tokenizer:
    """Quote-aware tokenizer for splitting payloads into arguments."""

    def __init__(self, line: str):
        self.line = line
        self.pos = 0

    def eof(self) -> bool:
        return self.pos >= len(self.line)

    def peek(self) -> Optional[str]:
        if self.eof():
            return None
        return self.line[self.pos]

    def skip_whitespace(self):
        while not self.eof() and self.line[self.pos].isspace():
            self.pos += 1

    def consume_word(self) -> str:
        """Consume an unquoted word."""
        start = self.pos
        while not self.eof() and not self.line[self.pos].isspace():
            self.pos += 1
        return self.line[start : self.pos]

    def consume_quoted(self, quote_char: str) -> str:
        """Consume a quoted string, handling escape sequences."""
        self.pos += 1  # Skip opening quote
        content = ""

        while not self.eof():
            char = self.line[self.pos]
            if char == "\\":
                self.pos += 1
                if self.eof():
                    content += "\\"
                    break

                next_char = self.line[self.pos]
                if next_char == "\\" or next_char == quote_char:
                    content += next_char
                else:
                    # Any other escaped char is kept literally
                    content += "\\" + next_char
                self.pos += 1
            elif char == quote_char:
                self.pos += 1  # Skip closing quote
                break
            else:
                content += char
                self.pos += 1
        return content

    def tokenize(self) -> list[str]:
        """
        Tokenize the entire line into a list of strings.
        A quoted multi-word argument stays a single token with its quotes removed.
        """
        tokens: list[str] = []

        while not self.eof():
            self.skip_whitespace()
            if self.eof():
                break

            char = self.peek()
            if char in ['"', "'"]:
                tokens.append(self.consume_quoted(char))
            else:
                tokens.append(self.consume_word())

        return tokens


class Directive(Enum):
    CMD = "cmd"
    ASSERT = "assert"
    SLEEP = "sleep"
    SERVER_START = "server_start"
    SERVER_STOP = "server_stop"
    COMMENT = "comment"


STEP_KEYWORDS = ("Given", "When", "Then", "And")


@dataclass(frozen=True)
class Step:
    keyword: str
    directive: Directive
    text: str  # Quoted payload, server name or comment text
    line_number: int = 0

    def to_str(self) -> str:
        """Reconstruct the step line as written in the feature file"""
        if self.directive == Directive.COMMENT:
            return f"# {self.text}"
        if self.directive == Directive.SERVER_START:
            if self.text:
                return f"{self.keyword} a server for {self.text}"
            return f"{self.keyword} the server"
        if self.directive == Directive.SERVER_STOP:
            return f"{self.keyword} stop the server"
        return f'{self.keyword} {self.directive.value}: "{self.text}"'


@dataclass(frozen=True)
class Scenario:
    name: str
    steps: tuple[Step, ...]
    line_number: int = 0
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class Feature:
    name: str
    scenarios: tuple[Scenario, ...]
    path: str = ""
    comments: tuple[str, ...] = ()


class Reader:
    def __init__(self, content: str):
        self.lines = content.splitlines()
        self.position = 0

    def consume(self) -> str:
        """Consume and return the next line"""
        line = self.lines[self.position]
        self.position += 1
        return line

    def is_eof(self) -> bool:
        return self.position >= len(self.lines)

    def line_number(self) -> int:
        return self.position + 1


_STEP_RE = re.compile(r"^(%s)\s+(.*)$" % "|".join(STEP_KEYWORDS))
_DIRECTIVE_RE = re.compile(r"^(cmd|assert|sleep):\s*(.*)$")
_SERVER_START_RE = re.compile(r"^(?:the|a) server(?:\s+for\s+(\S+))?$")
_SERVER_STOP_RE = re.compile(r"^stop the server$")
_SECONDS_RE = re.compile(r"^\d+(\.\d+)?$")


def count_unescaped_quotes(text: str) -> int:
    count = 0
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            count += 1
    return count


class Parser:
    """Turns feature file text into a Feature tree.

    Grammar, one construct per line (indentation ignored)::

        Feature: <name>
        @tag @other
        Scenario: <name>
          Given|When|Then|And cmd: "<payload>"
          Given|When|Then|And assert: "<left> <op> <right>"
          Given|When|Then|And sleep: "<seconds>"
          Given the server | Given a server for <name>
          Then stop the server
        # comment
    """

    def __init__(self, content: str, path: str = ""):
        self.reader = Reader(content)
        self.path = path
        self.feature_name: Optional[str] = None
        self.comments: list[str] = []
        self.scenarios: list[Scenario] = []
        self.pending_tags: list[str] = []
        self.scenario_header: Optional[tuple[str, int, tuple[str, ...]]] = None
        self.steps: list[Step] = []

    def error(self, message: str, line_number: int) -> ParseError:
        return ParseError(message, line_number, self.path)

    def parse(self) -> Feature:
        """Parse the entire feature text"""
        while not self.reader.is_eof():
            line_number = self.reader.line_number()
            line = self.reader.consume().strip()

            if not line:
                continue
            if line.startswith("#"):
                self.parse_comment(line, line_number)
            elif line.startswith("Feature:"):
                self.parse_feature_line(line, line_number)
            elif line.startswith("@"):
                self.parse_tags(line, line_number)
            elif line.startswith("Scenario:"):
                self.parse_scenario_line(line, line_number)
            elif _STEP_RE.match(line):
                self.steps.append(self.parse_step(line, line_number))
            else:
                raise self.error(f"Unknown line: {line}", line_number)

        self.close_scenario()
        if self.pending_tags:
            raise self.error(
                "Tags are not followed by a scenario", self.reader.line_number() - 1
            )
        if self.feature_name is None:
            raise self.error("Missing 'Feature:' line", 0)
        if not self.scenarios:
            raise self.error(f"Feature '{self.feature_name}' has no scenarios", 0)

        return Feature(
            name=self.feature_name,
            scenarios=tuple(self.scenarios),
            path=self.path,
            comments=tuple(self.comments),
        )

    def parse_comment(self, line: str, line_number: int):
        comment_text = line[1:].strip()
        if self.scenario_header is None:
            self.comments.append(comment_text)
        else:
            self.steps.append(
                Step("#", Directive.COMMENT, comment_text, line_number)
            )

    def parse_feature_line(self, line: str, line_number: int):
        if self.feature_name is not None:
            raise self.error("Only one 'Feature:' line is allowed", line_number)
        if self.scenario_header is not None:
            raise self.error("'Feature:' must come before scenarios", line_number)
        name = line[len("Feature:") :].strip()
        if not name:
            raise self.error("Feature name is required", line_number)
        self.feature_name = name

    def parse_tags(self, line: str, line_number: int):
        for tag in line.split():
            if not tag.startswith("@") or len(tag) < 2:
                raise self.error(f"Invalid tag: {tag}", line_number)
            self.pending_tags.append(tag[1:])

    def parse_scenario_line(self, line: str, line_number: int):
        if self.feature_name is None:
            raise self.error("'Scenario:' before 'Feature:'", line_number)
        name = line[len("Scenario:") :].strip()
        if not name:
            raise self.error("Scenario name is required", line_number)

        self.close_scenario()
        self.scenario_header = (name, line_number, tuple(self.pending_tags))
        self.pending_tags = []

    def close_scenario(self):
        if self.scenario_header is None:
            return
        name, line_number, tags = self.scenario_header
        self.scenarios.append(Scenario(name, tuple(self.steps), line_number, tags))
        self.scenario_header = None
        self.steps = []

    def parse_step(self, line: str, line_number: int) -> Step:
        if self.scenario_header is None:
            raise self.error("Step outside of a scenario", line_number)

        keyword, rest = _STEP_RE.match(line).groups()
        rest = rest.strip()

        directive_match = _DIRECTIVE_RE.match(rest)
        if directive_match:
            directive = Directive(directive_match.group(1))
            payload = self.parse_quoted(directive_match.group(2), line_number)
            if directive == Directive.ASSERT:
                try:
                    assertion_triples(split_payload(payload))
                except ValueError as e:
                    raise self.error(str(e), line_number) from e
            elif directive == Directive.SLEEP and not _SECONDS_RE.match(
                payload.strip()
            ):
                raise self.error(f"Invalid sleep duration: {payload}", line_number)
            elif directive == Directive.CMD and not split_payload(payload):
                raise self.error("Empty command", line_number)
            return Step(keyword, directive, payload, line_number)

        server_match = _SERVER_START_RE.match(rest)
        if server_match:
            return Step(
                keyword, Directive.SERVER_START, server_match.group(1) or "", line_number
            )
        if _SERVER_STOP_RE.match(rest):
            return Step(keyword, Directive.SERVER_STOP, "", line_number)

        raise self.error(f"Unknown step: {line}", line_number)

    def parse_quoted(self, text: str, line_number: int) -> str:
        """Extract the payload between the first and the last double quote.

        Embedded double quotes must balance so that quoted arguments
        inside the payload survive intact.
        """
        text = text.strip()
        if len(text) < 2 or text[0] != '"' or text[-1] != '"':
            raise self.error("Expected a double-quoted payload", line_number)

        payload = text[1:-1]
        if count_unescaped_quotes(payload) % 2:
            raise self.error(f"Unbalanced quotes in payload: {payload}", line_number)
        if not payload.strip():
            raise self.error("Empty payload", line_number)
        return payload


def parse_feature(content: str, path: str = "") -> Feature:
    return Parser(content, path).parse()


def parse_feature_file(path) -> Feature:
    with open(path, "r") as f:
        content = f.read()
    return parse_feature(content, str(path))


@dataclass(frozen=True)
class Record:
    """One recorded command output: parsed JSON or the raw stdout text."""

    value: Any
    structured: bool


@dataclass(frozen=True)
class PathExpression:
    category: str
    segments: tuple  # int for an index, str for a field
    text: str = ""


_PATH_HEAD_RE = re.compile(r"\$\.([A-Za-z_][\w-]*)")
_PATH_SEGMENT_RE = re.compile(r"\[(-?\d+)\]|\.([\w-]+)")


def parse_path(text: str) -> PathExpression:
    """Parse ``$.category[i][j].field`` into a PathExpression."""
    text = text.strip()
    head = _PATH_HEAD_RE.match(text)
    if not head:
        raise PathResolutionError(f"Invalid path expression: {text}")

    segments: list = []
    pos = head.end()
    while pos < len(text):
        match = _PATH_SEGMENT_RE.match(text, pos)
        if not match:
            raise PathResolutionError(
                f"Invalid path expression: {text} (at '{text[pos:]}')"
            )
        index, name = match.groups()
        segments.append(int(index) if index is not None else name)
        pos = match.end()

    return PathExpression(head.group(1), tuple(segments), text)


# Marks a navigation step that found nothing
MISSING = object()


def select_index(items, index: int):
    if -len(items) <= index < len(items):
        return items[index]
    return MISSING


def navigate(value, segment):
    """Step one segment into a JSON value, returning MISSING on shape mismatch."""
    if isinstance(segment, int):
        if not isinstance(value, list):
            return MISSING
        return select_index(value, segment)
    if isinstance(value, dict) and segment in value:
        return value[segment]
    return MISSING


def json_type_name(value) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def describe_miss(value, segment) -> str:
    if isinstance(segment, int):
        if isinstance(value, list):
            return f"index [{segment}] out of range for array of {len(value)}"
        return f"index [{segment}] applied to a {json_type_name(value)}"
    if isinstance(value, dict):
        return f"field '{segment}' is absent"
    return f"field '{segment}' applied to a {json_type_name(value)}"


def render_value(value) -> str:
    """Render a resolved value for substitution into step text."""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


class SymbolTable:
    """Name to value bindings written by command side effects."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def set(self, name: str, value: str):
        self._values[name] = value

    def get(self, name: str) -> str:
        if name not in self._values:
            raise UndefinedVariableError(f"Undefined variable {{{name}}}")
        return self._values[name]

    def items(self):
        return self._values.items()

    def __contains__(self, name) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)


class ResultStore:
    """Append-only history of command outputs, grouped by category."""

    def __init__(self):
        self._entries: dict[str, list[Record]] = {}

    def append(self, category: str, record: Record) -> int:
        """Record an output and return its index within the category"""
        history = self._entries.setdefault(category, [])
        history.append(record)
        return len(history) - 1

    def history(self, category: str) -> tuple[Record, ...]:
        return tuple(self._entries.get(category, ()))

    def categories(self) -> list[str]:
        return list(self._entries)

    def resolve(self, expression) -> Any:
        """Resolve a path against the history as it is right now."""
        path = (
            expression
            if isinstance(expression, PathExpression)
            else parse_path(expression)
        )
        history = self._entries.get(path.category)
        if not history:
            raise PathResolutionError(
                f"{path.text}: no results recorded under '{path.category}'"
            )
        if not path.segments or not isinstance(path.segments[0], int):
            raise PathResolutionError(
                f"{path.text}: expected a history index after '$.{path.category}'"
            )

        index = path.segments[0]
        record = select_index(history, index)
        if record is MISSING:
            raise PathResolutionError(
                f"{path.text}: index [{index}] out of range, "
                f"'{path.category}' has {len(history)} entries"
            )

        rest = path.segments[1:]
        if rest and not record.structured:
            raise PathResolutionError(
                f"{path.text}: entry {index} of '{path.category}' is raw output, "
                "only whole-value comparison is possible"
            )

        value = record.value
        for segment in rest:
            found = navigate(value, segment)
            if found is MISSING:
                raise PathResolutionError(f"{path.text}: {describe_miss(value, segment)}")
            value = found
        return value


@dataclass
class RunContext:
    """State owned by one harness run and passed to every step."""

    symbols: SymbolTable = field(default_factory=SymbolTable)
    results: ResultStore = field(default_factory=ResultStore)


_TEMPLATE_SPACE_RE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_TEMPLATE_RE = re.compile(
    r"\{\{\s*(\$[^{}]*?)\s*\}\}|\{\{([^{}]*?)\}\}|(?<!\{)\{([A-Za-z_][\w-]*)\}(?!\})"
)


def split_payload(payload: str) -> list[str]:
    """Split a payload into arguments, keeping every ``{{ ... }}`` in one token."""
    normalized = _TEMPLATE_SPACE_RE.sub(lambda m: "{{" + m.group(1) + "}}", payload)
    return Tokenizer(normalized).tokenize()


def resolve_template(text: str, context: RunContext) -> str:
    """Substitute ``{name}`` variables and ``{{$.path}}`` expressions."""

    def substitute(match):
        path, bad_path, name = match.groups()
        if path is not None:
            return render_value(context.results.resolve(path))
        if bad_path is not None:
            raise PathResolutionError(f"Invalid path expression: {bad_path}")
        return context.symbols.get(name)

    return _TEMPLATE_RE.sub(substitute, text)


def resolve_tokens(payload: str, context: RunContext) -> list[str]:
    return [resolve_template(token, context) for token in split_payload(payload)]


_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


def coerce(text: str):
    """Return text as an int or float when it reads as a number."""
    if not _NUMBER_RE.match(text):
        return text
    try:
        return int(text)
    except ValueError:
        return float(text)


OPERATORS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
    "contains": lambda left, right: right in left,
    "not_contains": lambda left, right: right not in left,
}

STRING_OPERATORS = ("contains", "not_contains")


@dataclass(frozen=True)
class Comparison:
    left: str
    op: str
    right: str
    passed: bool

    def to_str(self) -> str:
        return f"'{self.left}' {self.op} '{self.right}'"


def assertion_triples(tokens: list[str]) -> list[tuple[str, str, str]]:
    """Group assertion tokens into ``(left, op, right)`` triples."""
    if not tokens or len(tokens) % 3:
        raise ValueError(
            f"Assertion must be '<left> <op> <right>' triples, got {tokens}"
        )
    triples = [tuple(tokens[i : i + 3]) for i in range(0, len(tokens), 3)]
    for _, op, _ in triples:
        if op not in OPERATORS:
            raise ValueError(
                f"Unknown operator '{op}', expected one of {', '.join(OPERATORS)}"
            )
    return triples


def compare(left: str, op: str, right: str) -> bool:
    if op in STRING_OPERATORS:
        return OPERATORS[op](left, right)

    left_value, right_value = coerce(left), coerce(right)
    if isinstance(left_value, str) or isinstance(right_value, str):
        left_value, right_value = left, right
    return OPERATORS[op](left_value, right_value)


def evaluate_assertion(tokens: list[str]) -> list[Comparison]:
    """Evaluate resolved assertion tokens. Mismatches are results, not errors."""
    return [
        Comparison(left, op, right, compare(left, op, right))
        for left, op, right in assertion_triples(tokens)
    ]


@dataclass
class HarnessConfig:
    binary: list[str]
    cwd: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    timeout: float = COMMAND_TIMEOUT
    server_args: list[str] = field(default_factory=lambda: list(DEFAULT_SERVER_ARGS))
    server_ready: str = DEFAULT_SERVER_READY
    server_host: str = "127.0.0.1"
    server_port: Optional[int] = None
    ready_timeout: float = READY_TIMEOUT
    bindings: dict[str, str] = field(default_factory=dict)  # name -> path
    category_aliases: dict[str, str] = field(
        default_factory=lambda: dict(CATEGORY_ALIASES)
    )

    def process_env(self) -> dict:
        env = os.environ.copy()
        env.update(self.env)
        return env


@dataclass
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str


@dataclass
class CommandOutcome:
    category: str
    index: int
    record: Record
    result: ExecutionResult


def category_for(tokens: list[str], aliases: Optional[dict] = None) -> str:
    """The first non-flag token names the category a command records under."""
    for token in tokens:
        if not token.startswith("-"):
            return (aliases or {}).get(token, token)
    raise ExecutionError(f"Command has no category token: {' '.join(tokens)}")


def parse_output(stdout: str) -> Record:
    text = stdout.strip()
    try:
        return Record(json.loads(text), True)
    except ValueError:
        return Record(text, False)


def tail(text: str, lines: int = 5) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def kill_process_group(pgid: int, sig):
    """Signal every process in a group. A group that is already gone is fine."""
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        pass


def process_group_alive(pgid: int) -> bool:
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    return True


class CommandExecutor:
    """Runs resolved cmd steps against the binary under test."""

    def __init__(self, config: HarnessConfig, context: RunContext):
        self.config = config
        self.context = context

    def run(self, tokens: list[str]) -> CommandOutcome:
        category = category_for(tokens, self.config.category_aliases)
        cmd_line = list(self.config.binary) + list(tokens)
        result = self._run_subprocess_command(cmd_line)

        if result.exit_code != 0:
            message = f"Command exited with code {result.exit_code}: {' '.join(tokens)}"
            if result.stderr.strip():
                message += f"\n{tail(result.stderr)}"
            raise ExecutionError(message)

        record = parse_output(result.stdout)
        index = self.context.results.append(category, record)
        self._apply_bindings(category)
        return CommandOutcome(category, index, record, result)

    def _run_subprocess_command(self, cmd_line: list[str]) -> ExecutionResult:
        """Execute command with subprocess and return ExecutionResult"""
        try:
            # Own session, so a timeout can kill everything the command forked
            proc = subprocess.Popen(
                cmd_line,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                cwd=self.config.cwd,
                env=self.config.process_env(),
                start_new_session=True,
            )
        except OSError as e:
            raise ExecutionError(f"Failed to run {cmd_line[0]}: {e}") from e

        try:
            stdout, stderr = proc.communicate(timeout=self.config.timeout)
        except subprocess.TimeoutExpired as e:
            kill_process_group(proc.pid, signal.SIGKILL)
            proc.communicate()
            raise StepTimeoutError(
                f"Command timed out after {self.config.timeout}s: {' '.join(cmd_line)}"
            ) from e
        except BaseException:
            kill_process_group(proc.pid, signal.SIGKILL)
            proc.wait()
            raise

        return ExecutionResult(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    def _apply_bindings(self, category: str):
        """Rebind every variable whose path reads from the category just written."""
        for name, expression in self.config.bindings.items():
            path = parse_path(expression)
            if path.category != category:
                continue
            try:
                value = self.context.results.resolve(path)
            except PathResolutionError as e:
                # The binding keeps its previous value, if any
                if verbose:
                    print(f"{T.grey}▸ {{{name}}} not bound: {e}{T.clear}")
                continue
            self.context.symbols.set(name, render_value(value))
            if verbose:
                print(f"{T.green}▸ bind {{{name}}}='{render_value(value)}' ✓{T.clear}")


class BackgroundServer:
    """A long-lived server process with explicit start, wait-ready and stop."""

    def __init__(self, config: HarnessConfig, name: str = ""):
        self.config = config
        self.name = name
        self.proc: Optional[PopenSpawn] = None

    @property
    def cmd_line(self) -> list[str]:
        return list(self.config.binary) + list(self.config.server_args)

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.proc.poll() is None

    def start(self):
        try:
            # Own session, so stop() reaches everything the server forks
            self.proc = PopenSpawn(
                self.cmd_line,
                timeout=self.config.ready_timeout,
                cwd=self.config.cwd,
                env=self.config.process_env(),
                encoding="utf-8",
                codec_errors="replace",
                preexec_fn=os.setsid,
            )
        except OSError as e:
            raise ExecutionError(
                f"Failed to start server {' '.join(self.cmd_line)}: {e}"
            ) from e

    def wait_ready(self):
        """Block until the server is reachable, stopping it on any failure."""
        try:
            if self.config.server_port:
                self._wait_for_port()
            else:
                self._wait_for_banner()
        except BaseException:
            self.stop()
            raise

    def _wait_for_banner(self):
        try:
            self.proc.expect(self.config.server_ready, timeout=self.config.ready_timeout)
        except pexpect.TIMEOUT as e:
            raise StepTimeoutError(
                f"Server did not print '{self.config.server_ready}' "
                f"within {self.config.ready_timeout}s"
            ) from e
        except pexpect.EOF as e:
            raise ExecutionError(
                f"Server exited before becoming ready:\n{tail(self.proc.before or '')}"
            ) from e

    def _wait_for_port(self):
        address = (self.config.server_host, self.config.server_port)
        deadline = time.monotonic() + self.config.ready_timeout
        while True:
            if not self.running:
                raise ExecutionError(
                    f"Server exited with code {self.proc.proc.returncode} "
                    "before becoming ready"
                )
            try:
                with socket.create_connection(address, timeout=READY_POLL_INTERVAL):
                    return
            except OSError:
                pass
            self.drain()
            if time.monotonic() >= deadline:
                raise StepTimeoutError(
                    f"Server not reachable on {address[0]}:{address[1]} "
                    f"within {self.config.ready_timeout}s"
                )
            time.sleep(READY_POLL_INTERVAL)

    def drain(self) -> str:
        """Take the output the server printed since the last call.

        Nothing else reads the spawn after readiness, so the runner calls
        this between steps to keep its buffer from growing.
        """
        if self.proc is None:
            return ""
        chunks = []
        while True:
            try:
                chunk = self.proc.read_nonblocking(DRAIN_CHUNK_SIZE, timeout=READY_POLL_INTERVAL)
            except pexpect.EOF:
                break
            chunks.append(chunk)
            # a short read means the queue is empty for now
            if len(chunk) < DRAIN_CHUNK_SIZE:
                break
        return "".join(chunks)

    def stop(self):
        """Terminate the server's process group, killing what ignores SIGTERM."""
        if self.proc is None:
            return
        proc = self.proc.proc
        kill_process_group(proc.pid, signal.SIGTERM)

        deadline = time.monotonic() + STOP_GRACE_PERIOD
        while time.monotonic() < deadline:
            proc.poll()  # reap the leader so the group can empty
            if not process_group_alive(proc.pid):
                break
            time.sleep(READY_POLL_INTERVAL)

        kill_process_group(proc.pid, signal.SIGKILL)
        proc.wait()
        self.proc = None


class ServerScope:
    """Owns the background server of one scenario; stops it on every exit path."""

    def __init__(self, config: HarnessConfig):
        self.config = config
        self.server: Optional[BackgroundServer] = None

    def __enter__(self) -> "ServerScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False

    def start(self, name: str = "") -> BackgroundServer:
        if self.server is not None and self.server.running:
            raise ExecutionError("A server is already running in this scenario")

        server = BackgroundServer(self.config, name)
        server.start()
        self.server = server
        server.wait_ready()
        return server

    def drain(self) -> str:
        if self.server is None:
            return ""
        return self.server.drain()

    def stop(self) -> bool:
        """Stop the server if one was started, return whether one was"""
        if self.server is None:
            return False
        self.server.stop()
        self.server = None
        return True


class ScenarioStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


@dataclass
class ScenarioResult:
    name: str
    number: int
    status: ScenarioStatus = ScenarioStatus.PENDING
    failed_step: Optional[Step] = None
    error: str = ""


@dataclass
class FeatureResult:
    name: str
    path: str
    scenarios: list[ScenarioResult] = field(default_factory=list)

    def count(self, status: ScenarioStatus) -> int:
        return sum(1 for s in self.scenarios if s.status == status)


@dataclass
class RunReport:
    features: list[FeatureResult] = field(default_factory=list)

    def count(self, status: ScenarioStatus) -> int:
        return sum(f.count(status) for f in self.features)

    @property
    def total(self) -> int:
        return sum(len(f.scenarios) for f in self.features)

    @property
    def ok(self) -> bool:
        return (
            self.count(ScenarioStatus.FAILED) == 0
            and self.count(ScenarioStatus.ERRORED) == 0
        )


class ScenarioRunner:
    def __init__(self, config: HarnessConfig):
        self.config = config

    def run(
        self,
        features: list[Feature],
        scenario_filter: Optional[str] = None,
        tag_filter: Optional[str] = None,
    ) -> RunReport:
        """Run every selected scenario of every feature with one shared context"""
        report = RunReport()
        context = RunContext()
        total = sum(len(f.scenarios) for f in features)

        print(f"{T.bold}{T.blue}FeatureSpec Runner{T.clear}")
        print(f"Found {total} scenarios in {len(features)} features")

        def should_run(number: int, scenario: Scenario) -> bool:
            """Check if scenario should be run based on filters"""
            if tag_filter and tag_filter.lstrip("@") not in scenario.tags:
                return False
            if not scenario_filter:
                return True
            if scenario_filter.isdigit():
                return number == int(scenario_filter)
            return scenario_filter.lower() in scenario.name.lower()

        for feature in features:
            feature_result = FeatureResult(feature.name, feature.path)
            report.features.append(feature_result)
            print()
            print(f"{T.bold}{T.blue}Feature: {feature.name}{T.clear}")

            count = len(feature.scenarios)
            for i, scenario in enumerate(feature.scenarios):
                number = i + 1
                if not should_run(number, scenario):
                    continue

                print_horizontal_rule()
                print(f"{T.bold}{T.yellow}[{number}/{count}] {scenario.name}{T.clear}")
                result = self.run_scenario(scenario, context, number)
                feature_result.scenarios.append(result)

                if result.status == ScenarioStatus.PASSED:
                    print(f"\n{T.bold}{T.green}PASS{T.clear}")
                else:
                    print(f"\n{T.bold}{T.red}{result.status.value.upper()}{T.clear}")

        self.print_summary(report)
        return report

    def run_scenario(
        self, scenario: Scenario, context: RunContext, number: int = 0
    ) -> ScenarioResult:
        """Run the steps of one scenario in order, stopping at the first failure"""
        result = ScenarioResult(scenario.name, number, ScenarioStatus.RUNNING)
        executor = CommandExecutor(self.config, context)
        step = None

        try:
            with ServerScope(self.config) as servers:
                for step in scenario.steps:
                    self.run_step(step, context, executor, servers)
                    self._show_server_output(servers)
            result.status = ScenarioStatus.PASSED
        except StepError as e:
            result.status = ScenarioStatus.FAILED
            result.failed_step = step
            result.error = str(e)
            print(f"{T.red}Step failed at line {step.line_number}: {step.to_str()}{T.clear}")
            print_with_left_border(str(e), border_color=T.red, text_color=T.grey)
        except Exception as e:
            result.status = ScenarioStatus.ERRORED
            result.failed_step = step
            result.error = f"{type(e).__name__}: {e}"
            print(f"{T.red}ERROR: {scenario.name} - {result.error}{T.clear}")

        return result

    def run_step(
        self,
        step: Step,
        context: RunContext,
        executor: CommandExecutor,
        servers: ServerScope,
    ):
        """Run a single step, raising StepError when it fails"""
        if step.directive == Directive.COMMENT:
            print(f"\n◼ {step.text}")
        elif step.directive == Directive.CMD:
            self._run_cmd(step, context, executor)
        elif step.directive == Directive.ASSERT:
            self._run_assertion(step, context)
        elif step.directive == Directive.SLEEP:
            seconds = float(step.text)
            print(f"{T.grey}sleep {seconds}s{T.clear}")
            time.sleep(seconds)
        elif step.directive == Directive.SERVER_START:
            self._start_server(step, servers)
        elif step.directive == Directive.SERVER_STOP:
            if servers.stop():
                verbose_check("server stopped", True)
            else:
                print(f"{T.yellow}▸ no server running{T.clear}")

    def _run_cmd(self, step: Step, context: RunContext, executor: CommandExecutor):
        tokens = resolve_tokens(step.text, context)
        display = " ".join(tokens)
        print(f"{T.yellow}{display}{T.clear}", end="\r")

        try:
            outcome = executor.run(tokens)
        except StepError:
            print(f"{T.red}{display}{T.clear}")
            raise

        print(f"{T.green}{display}{T.clear}")
        if verbose:
            if outcome.result.stderr.strip():
                print_with_left_border(
                    outcome.result.stderr.rstrip(), border_color=T.yellow, text_color=T.grey
                )
            if outcome.result.stdout.strip():
                print_with_left_border(
                    outcome.result.stdout.rstrip(), border_color=T.grey, text_color=T.grey
                )
            verbose_check(f"recorded $.{outcome.category}[{outcome.index}]", True)

    def _run_assertion(self, step: Step, context: RunContext):
        raw_tokens = split_payload(step.text)
        tokens = [resolve_template(token, context) for token in raw_tokens]
        comparisons = evaluate_assertion(tokens)

        failed = []
        for i, comparison in enumerate(comparisons):
            left_raw = raw_tokens[i * 3]
            variables = {left_raw: comparison.left} if left_raw != comparison.left else None
            if not verbose_check(comparison.to_str(), comparison.passed, variables):
                failed.append(comparison)

        if failed:
            raise AssertionFailure(
                "; ".join(f"expected {c.to_str()}" for c in failed)
            )

    def _show_server_output(self, servers: ServerScope):
        output = servers.drain()
        if verbose and output.strip():
            print_with_left_border(output.rstrip(), border_color=T.blue, text_color=T.grey)

    def _start_server(self, step: Step, servers: ServerScope):
        label = f"server {step.text}".strip()
        print(f"{T.yellow}starting {label}{T.clear}", end="\r")
        try:
            servers.start(step.text)
        except StepError:
            print(f"{T.red}starting {label}{T.clear}")
            raise
        print(f"{T.green}starting {label}{T.clear}")
        verbose_check(f"{label} ready", True)

    def print_summary(self, report: RunReport):
        print()
        print_horizontal_rule()
        print(f"{T.bold}Results{T.clear}")

        for feature in report.features:
            print(
                f"  {feature.name}: "
                f"{T.green}{feature.count(ScenarioStatus.PASSED)} passed{T.clear}, "
                f"{T.red}{feature.count(ScenarioStatus.FAILED)} failed{T.clear}, "
                f"{T.red}{feature.count(ScenarioStatus.ERRORED)} errored{T.clear}"
            )

        print(
            f"  {T.green}{report.count(ScenarioStatus.PASSED)} passed{T.clear}, "
            f"{T.red}{report.count(ScenarioStatus.FAILED)} failed{T.clear}, "
            f"{T.red}{report.count(ScenarioStatus.ERRORED)} errored{T.clear} "
            f"out of {report.total} scenarios"
        )

        failed = [
            (feature, scenario)
            for feature in report.features
            for scenario in feature.scenarios
            if scenario.status != ScenarioStatus.PASSED
        ]
        if failed:
            print(f"\n{T.bold}Failed scenarios:{T.clear}")
            for feature, scenario in failed:
                print(f"  {T.red}• {feature.name} [{scenario.number}] {scenario.name}{T.clear}")

        print()
        if report.ok:
            print(f"{T.bold}{T.green}All scenarios passed! ✅{T.clear}")
        else:
            print(f"{T.bold}{T.red}Some scenarios failed ❌{T.clear}")


def parse_assignments(values: Optional[list[str]], option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options into a dict."""
    assignments = {}
    for value in values or []:
        key, sep, rest = value.partition("=")
        if not sep or not key:
            raise ValueError(f"{option} expects KEY=VALUE, got '{value}'")
        assignments[key] = rest
    return assignments


def collect_feature_files(paths: list[str]) -> list[Path]:
    """Expand directories into the feature files they contain."""
    files = []
    for name in paths:
        path = Path(name)
        if path.is_dir():
            files.extend(sorted(path.rglob("*.feature")))
        elif path.is_file():
            files.append(path)
        else:
            raise FileNotFoundError(f"Feature file not found: {name}")
    if not files:
        raise FileNotFoundError(f"No feature files found in: {' '.join(paths)}")
    return files


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FeatureSpec Runner")
    parser.add_argument(
        "features", nargs="+", help="Feature files or directories to run"
    )
    parser.add_argument(
        "--bin",
        default=os.environ.get("FEATURESPEC_BIN"),
        help="Command line of the binary under test (default: $FEATURESPEC_BIN)",
    )
    parser.add_argument(
        "--cwd",
        default=os.environ.get("FEATURESPEC_CWD"),
        help="Working directory for commands (default: $FEATURESPEC_CWD)",
    )
    parser.add_argument(
        "--env",
        action="append",
        metavar="KEY=VALUE",
        help="Extra environment variable for commands and the server",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=COMMAND_TIMEOUT,
        help="Seconds each command may run",
    )
    parser.add_argument(
        "--server-args",
        default=" ".join(DEFAULT_SERVER_ARGS),
        help="Arguments that start the background server",
    )
    parser.add_argument(
        "--server-ready",
        default=DEFAULT_SERVER_READY,
        help="Regex in the server output that signals readiness",
    )
    parser.add_argument(
        "--server-host", default="127.0.0.1", help="Host used with --server-port"
    )
    parser.add_argument(
        "--server-port",
        type=int,
        help="Wait for this TCP port instead of the readiness output",
    )
    parser.add_argument(
        "--ready-timeout",
        type=float,
        default=READY_TIMEOUT,
        help="Seconds the server may take to become ready",
    )
    parser.add_argument(
        "--bind",
        action="append",
        metavar="NAME=PATH",
        help="Bind {NAME} to a result path after each command of its category",
    )
    parser.add_argument(
        "--category-alias",
        action="append",
        metavar="ALIAS=CATEGORY",
        help="Record commands starting with ALIAS under CATEGORY",
    )
    parser.add_argument(
        "--scenario",
        help="Run only scenarios matching this number or substring of their name",
    )
    parser.add_argument("--tag", help="Run only scenarios carrying this tag")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print the output of each command",
    )
    return parser


def main(argv: Optional[list[str]] = None):
    global verbose

    parser = build_arg_parser()
    args = parser.parse_args(argv)

    verbose = args.verbose

    binary = Tokenizer(args.bin or "").tokenize()
    if not binary:
        parser.error("no binary under test: pass --bin or set FEATURESPEC_BIN")

    try:
        env = parse_assignments(args.env, "--env")
        bindings = parse_assignments(args.bind, "--bind")
        aliases = parse_assignments(args.category_alias, "--category-alias")
        for expression in bindings.values():
            parse_path(expression)
    except (ValueError, PathResolutionError) as e:
        parser.error(str(e))

    config = HarnessConfig(
        binary=binary,
        cwd=args.cwd,
        env=env,
        timeout=args.timeout,
        server_args=Tokenizer(args.server_args).tokenize(),
        server_ready=args.server_ready,
        server_host=args.server_host,
        server_port=args.server_port,
        ready_timeout=args.ready_timeout,
        bindings=bindings,
        category_aliases={**CATEGORY_ALIASES, **aliases},
    )

    try:
        features = [
            parse_feature_file(path) for path in collect_feature_files(args.features)
        ]
    except FileNotFoundError as e:
        print(e)
        sys.exit(1)
    except ParseError as e:
        print(f"Parse error: {e}")
        sys.exit(1)

    runner = ScenarioRunner(config)
    report = runner.run(features, scenario_filter=args.scenario, tag_filter=args.tag)

    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
