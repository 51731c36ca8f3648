"""
Parser for the protocol description language.

The source is read section by section:

    PROTOCOL <name>
    PROCESSES: <n>
    STATE: <var> [∈ <domain>]
    PARAMETERS: / INITIAL VALUES: / INITIAL:      (any order)
    CHANNEL: / ROLES:                             (either order, optional)
    MODEL:                                        (optional)
    UPDATE RULE:                                  (optional)
    METRICS:                                      (optional)

Section keywords are case-sensitive. A section's content may follow the colon
on the header line or sit on the lines below it. Expressions and predicates
are parsed by a small operator-precedence descent that tracks parenthesis
depth character by character.
"""

import re
from pathlib import Path

import structlog

from ..errors import ParseError
from .ir import (
    Aggregate,
    AggregateOp,
    AggregateSource,
    Assign,
    BinaryOp,
    BinOp,
    ChannelGuarantee,
    Comparison,
    ComparisonOp,
    Conditional,
    ConditionalElse,
    DeliveryModelSpec,
    DeliveryModelType,
    DEFAULT_METRICS,
    ExprIR,
    FilteredAggregate,
    IfReceivedDiff,
    IndexedVar,
    IsLeader,
    Literal,
    LogicalOp,
    LogicalOpKind,
    Metric,
    ParamRef,
    PhaseKind,
    PredicateIR,
    ProtocolIR,
    ReceivedAll,
    ReceivedAny,
    ReceivedAtLeast,
    ReceivedDiff,
    ReceivedFrom,
    ReceivedMajority,
    ReceivedOtherValue,
    SelfValue,
    SimpleOp,
    SimpleOpKind,
    UpdateIR,
    UpdatePhase,
    ValueFrom,
    Var,
)

logger = structlog.get_logger(system="parser")

_SECTION_KEYWORDS = (
    "PROCESSES",
    "NODES",
    "STATE",
    "PARAMETERS",
    "INITIAL VALUES",
    "INITIAL",
    "CHANNEL",
    "ROLES",
    "MODEL",
    "UPDATE RULE",
    "METRICS",
)
_HEADER_RE = re.compile(
    r"^(?P<kw>" + "|".join(_SECTION_KEYWORDS) + r")\s*(?::\s*(?P<rest>.*))?$"
)
_PROTOCOL_RE = re.compile(r"^PROTOCOL\s+(\S+)\s*$")
_PROCESSES_RE = re.compile(r"^(?:PROCESSES|NODES)\s*:\s*(\d+)\s*$")

_NUMBER_RE = re.compile(r"^-?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_INDEXED_RE = re.compile(r"^([A-Za-z][A-Za-z0-9]*)(?:ᵢ|_i|\[i\])$")
_STATE_RE = re.compile(r"^([A-Za-z][A-Za-z0-9]*)(?:ᵢ|_i|\[i\])?\s*(?:(?:∈|in\s)\s*(.+))?$")
_AGGREGATE_RE = re.compile(r"^(sum|avg|min|max|count)\s*\((.*)\)$", re.IGNORECASE)
_FILTER_RE = re.compile(r"^(inbox_from|all_from)\s*\(([\d,\s]+)\)$", re.IGNORECASE)
_IF_RE = re.compile(r"^if\s+(.+?)\s+then\b\s*(.*)$", re.IGNORECASE)

_PHASE_RE = [
    (re.compile(r"^EACH ROUND\b\s*:?\s*(?P<rest>.*)$"), PhaseKind.EACH_ROUND),
    (re.compile(r"^FIRST ROUND\b\s*:?\s*(?P<rest>.*)$"), PhaseKind.FIRST_ROUND),
    (re.compile(r"^AFTER\s+(?P<k>\d+)\s+ROUNDS?\s*:?\s*(?P<rest>.*)$"), PhaseKind.AFTER_ROUNDS),
    (re.compile(r"^UNTIL\s+(?P<what>\w+)\s*:?\s*(?P<rest>.*)$"), PhaseKind.UNTIL_CONSENSUS),
    (re.compile(r"^END\b\s*:?\s*(?P<rest>.*)$"), PhaseKind.END),
]

_BINARY_OPS = {
    "+": BinaryOp.ADD,
    "-": BinaryOp.SUB,
    "*": BinaryOp.MUL,
    "/": BinaryOp.DIV,
}

# Longest match first so ">=" is never read as ">".
_COMPARISON_OPS = [
    (">=", ComparisonOp.GTE),
    ("<=", ComparisonOp.LTE),
    ("!=", ComparisonOp.NEQ),
    ("==", ComparisonOp.EQ),
    (">", ComparisonOp.GT),
    ("<", ComparisonOp.LT),
]

# Entries of ProtocolIR.params that are set by CHANNEL and ROLES, not PARAMETERS.
_RESERVED_PARAMS = frozenset({"channel_guarantee", "leader_id"})


# =============================================================================
# Text helpers
# =============================================================================


def _strip_outer_parens(text: str) -> str:
    """Remove parentheses that wrap the whole text, repeatedly."""
    while text.startswith("(") and text.endswith(")"):
        depth = 0
        for i, ch in enumerate(text):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
            if depth == 0 and i < len(text) - 1:
                return text
        text = text[1:-1].strip()
    return text


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    """Split on a separator that is not nested inside parentheses."""
    parts = []
    depth = 0
    current = []
    for ch in text:
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts]


def _find_top_level(text: str, token: str, case_insensitive: bool = False) -> int:
    """Index of the first occurrence of token at depth zero, or -1."""
    haystack = text.lower() if case_insensitive else text
    depth = 0
    n = len(token)
    for i, ch in enumerate(text):
        if ch in "([":
            depth += 1
        elif ch in ")]":
            depth -= 1
        elif depth == 0 and haystack[i:i + n] == token:
            return i
    return -1


def _is_binary_position(text: str, i: int) -> bool:
    """Whether the operator at index i is binary rather than a sign."""
    prefix = text[:i].rstrip()
    if not prefix or prefix[-1] in "+-*/(,":
        return False
    # Exponent of a numeric literal such as 1e-3.
    if text[i] in "+-" and re.search(r"(?:^|[^A-Za-z0-9_])\d+\.?\d*[eE]$", prefix):
        return False
    return True


def _find_binary_op(text: str, ops: str) -> int:
    """Rightmost top-level binary operator from ops, or -1.

    Scanning right to left makes the operators left-associative.
    """
    depth = 0
    for i in range(len(text) - 1, -1, -1):
        ch = text[i]
        if ch in ")]":
            depth += 1
        elif ch in "([":
            depth -= 1
        elif depth == 0 and ch in ops and _is_binary_position(text, i):
            return i
    return -1


# =============================================================================
# Expressions, predicates and update rules
# =============================================================================


class RuleParser:
    """Parses expressions, inbox predicates and update rules.

    Args:
        state_var: Name of the protocol's state variable.
        num_processes: If known, process ids in the text are range-checked.
        params: If given, the only identifiers accepted as parameter
            references; any other name is a ParseError.
    """

    def __init__(
        self,
        state_var: str = "x",
        num_processes: int | None = None,
        params: frozenset[str] | None = None,
    ):
        self.state_var = state_var
        self.num_processes = num_processes
        self.params = params

    def _self_tokens(self) -> set[str]:
        v = self.state_var
        return {"self", v, f"{v}ᵢ", f"{v}_i", f"{v}[i]"}

    def _check_process_id(self, pid: int, line_no: int | None, what: str) -> int:
        if pid < 1 or (self.num_processes is not None and pid > self.num_processes):
            upper = self.num_processes if self.num_processes is not None else "N"
            raise ParseError(line_no, f"{what}: process id {pid} must be between 1 and {upper}")
        return pid

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def expr(self, text: str, line_no: int | None = None) -> ExprIR:
        """Parse an arithmetic expression."""
        t = text.strip()
        if not t:
            raise ParseError(line_no, "empty expression")

        if _NUMBER_RE.match(t):
            return Literal(float(t))

        stripped = _strip_outer_parens(t)
        if stripped != t:
            return self.expr(stripped, line_no)

        for ops in ("+-", "*/"):
            i = _find_binary_op(t, ops)
            if i >= 0:
                left, right = t[:i].strip(), t[i + 1:].strip()
                if not left or not right:
                    raise ParseError(line_no, f"operator '{t[i]}' is missing an operand in '{t}'")
                return BinOp(_BINARY_OPS[t[i]], self.expr(left, line_no), self.expr(right, line_no))

        if t.startswith("-"):
            return BinOp(BinaryOp.SUB, Literal(0.0), self.expr(t[1:], line_no))

        m = _AGGREGATE_RE.match(t)
        if m:
            return self._aggregate(AggregateOp(m.group(1).lower()), m.group(2).strip(), line_no)

        lower = t.lower()
        m = re.match(r"^value_from\s*\(\s*(\d+)\s*\)$", lower)
        if m:
            return ValueFrom(self._check_process_id(int(m.group(1)), line_no, "value_from"))
        if lower.startswith("value_from"):
            raise ParseError(line_no, f"value_from expects one integer process id, got '{t}'")

        m = re.match(r"^received_other\s*(?:\(\s*(\w+)\s*\))?$", t)
        if m:
            if m.group(1) not in (None, self.state_var):
                raise ParseError(line_no, f"received_other expects '{self.state_var}', got '{m.group(1)}'")
            return ReceivedOtherValue()

        if t in self._self_tokens():
            return SelfValue()
        if _IDENT_RE.match(t):
            if self.params is not None and t not in self.params:
                raise ParseError(line_no, f"undeclared identifier '{t}'; declare it in PARAMETERS")
            return ParamRef(t)
        raise ParseError(line_no, f"unknown token '{t}' in expression")

    def _aggregate(self, op: AggregateOp, arg: str, line_no: int | None) -> ExprIR:
        lower = arg.lower()
        if lower in ("inbox", "values"):
            return Aggregate(op, AggregateSource.INBOX)
        if lower == "all":
            return Aggregate(op, AggregateSource.INBOX_WITH_SELF)
        m = _FILTER_RE.match(arg)
        if m:
            ids = []
            for part in m.group(2).split(","):
                if not part.strip():
                    raise ParseError(line_no, f"empty process id in '{arg}'")
                ids.append(self._check_process_id(int(part), line_no, m.group(1)))
            return FilteredAggregate(op, tuple(ids), include_self=m.group(1).lower() == "all_from")
        raise ParseError(
            line_no,
            f"unknown aggregation source '{arg}' for {op.value}; "
            "expected inbox, all, values, inbox_from(...) or all_from(...)",
        )

    # -------------------------------------------------------------------------
    # Predicates
    # -------------------------------------------------------------------------

    def predicate(self, text: str, line_no: int | None = None) -> PredicateIR:
        """Parse an inbox predicate (the part between `if` and `then`)."""
        t = text.strip()
        if not t:
            raise ParseError(line_no, "empty predicate")

        stripped = _strip_outer_parens(t)
        if stripped != t:
            return self.predicate(stripped, line_no)

        for token, kind in ((" or ", LogicalOpKind.OR), (" and ", LogicalOpKind.AND)):
            i = _find_top_level(t, token, case_insensitive=True)
            if i >= 0:
                left = self.predicate(t[:i], line_no)
                right = self.predicate(t[i + len(token):], line_no)
                return LogicalOp(kind, (left, right))

        if t.lower().startswith("not ") or t.lower().startswith("not("):
            return LogicalOp(LogicalOpKind.NOT, (self.predicate(t[3:], line_no),))

        for token, op in _COMPARISON_OPS:
            i = _find_top_level(t, token)
            if i >= 0:
                return Comparison(
                    op,
                    self.expr(t[:i], line_no),
                    self.expr(t[i + len(token):], line_no),
                )

        return self._predicate_atom(t, line_no)

    def _predicate_atom(self, t: str, line_no: int | None) -> PredicateIR:
        compact = re.sub(r"\s+", " ", t.lower())
        v = self.state_var.lower()

        if compact in ("received_any", f"received_any({v})"):
            return ReceivedAny()
        if compact in ("received_all", f"received_all({v})"):
            return ReceivedAll()
        if compact in ("received_majority", f"received_majority({v})"):
            return ReceivedMajority()
        if compact == "self is leader":
            return IsLeader()

        m = re.match(r"^received_diff\s*(?:\(\s*(\w+)\s*\))?$", compact)
        if m:
            if m.group(1) not in (None, v):
                raise ParseError(line_no, f"received_diff expects '{self.state_var}', got '{m.group(1)}'")
            return ReceivedDiff(self.state_var)

        if compact.startswith("received_at_least"):
            m = re.match(r"^received_at_least\s*\(\s*(\d+)\s*\)$", compact)
            if not m:
                raise ParseError(line_no, "received_at_least requires an integer literal, e.g. received_at_least(2)")
            return ReceivedAtLeast(int(m.group(1)))

        if compact.startswith("received_from"):
            m = re.match(r"^received_from\s*\(\s*(\d+)\s*\)$", compact)
            if not m:
                raise ParseError(line_no, "received_from requires a process id, e.g. received_from(1)")
            return ReceivedFrom(self._check_process_id(int(m.group(1)), line_no, "received_from"))

        raise ParseError(line_no, f"invalid inbox predicate '{t}'")

    # -------------------------------------------------------------------------
    # Update rules
    # -------------------------------------------------------------------------

    def update(self, text: str, line_no: int | None = None) -> UpdateIR:
        """Parse a single-line update rule."""
        t = text.strip()
        if not t:
            raise ParseError(line_no, "empty update rule")

        if _IF_RE.match(t):
            return self.inline_conditional(t, line_no)

        m = re.match(r"^IF_RECEIVED_DIFF_THEN\s*\((.*)\)$", t, re.IGNORECASE)
        if m:
            args = _split_top_level(m.group(1))
            if len(args) != 2 or not all(args):
                raise ParseError(line_no, f"IF_RECEIVED_DIFF_THEN expects 2 arguments, got {len(args)}")
            return IfReceivedDiff(self.expr(args[0], line_no), self.expr(args[1], line_no))

        for arrow in ("←", "<-"):
            i = t.find(arrow)
            if i >= 0:
                target = self._target(t[:i].strip(), line_no)
                return Assign(target, self.expr(t[i + len(arrow):], line_no))

        lower = t.lower()
        for kind in SimpleOpKind:
            if lower == kind.value:
                return SimpleOp(kind)

        try:
            expr = self.expr(t, line_no)
        except ParseError:
            raise ParseError(line_no, f"unrecognized update rule '{t}'") from None
        return Assign(IndexedVar(self.state_var), expr)

    def _target(self, lhs: str, line_no: int | None):
        m = _INDEXED_RE.match(lhs)
        if m:
            name, target = m.group(1), IndexedVar(m.group(1))
        elif _IDENT_RE.match(lhs) or lhs == "self":
            name = self.state_var if lhs == "self" else lhs
            target = Var(name)
        else:
            raise ParseError(line_no, f"invalid assignment target '{lhs}'")
        if name != self.state_var:
            raise ParseError(
                line_no, f"assignment target '{lhs}' is not the state variable '{self.state_var}'"
            )
        return target

    def inline_conditional(self, text: str, line_no: int | None) -> UpdateIR:
        """Parse `if P then R1 [else R2] [end]` written on one line."""
        m = _IF_RE.match(text.strip())
        if not m:
            raise ParseError(line_no, "expected 'if <predicate> then <rule>'")
        pred = self.predicate(m.group(1), line_no)
        body = re.sub(r"\s+end$", "", m.group(2).strip())
        if not body:
            raise ParseError(line_no, "conditional requires a rule after 'then'")
        i = _find_top_level(body, " else ", case_insensitive=True)
        if i < 0:
            return Conditional(pred, self.update(body, line_no))
        then_rule = self.update(body[:i], line_no)
        else_rule = self.update(body[i + len(" else "):], line_no)
        return ConditionalElse(pred, then_rule, else_rule)


def parse_expr(text: str, line_no: int | None = None, state_var: str = "x") -> ExprIR:
    """Parse an expression with the default vocabulary."""
    return RuleParser(state_var).expr(text, line_no)


def parse_predicate(text: str, line_no: int | None = None, state_var: str = "x") -> PredicateIR:
    """Parse a predicate body; a leading `if` and trailing `then` are accepted."""
    m = _IF_RE.match(text.strip() + " ")
    body = m.group(1) if m else text
    return RuleParser(state_var).predicate(body, line_no)


def parse_update(text: str, line_no: int | None = None, state_var: str = "x") -> UpdateIR:
    return RuleParser(state_var).update(text, line_no)


# =============================================================================
# Protocol sections
# =============================================================================


class _ProtocolParser:
    """Section-by-section reader over the non-blank source lines."""

    def __init__(self, text: str):
        self.lines: list[tuple[int, str]] = []
        for number, raw in enumerate(text.splitlines(), start=1):
            stripped = raw.strip()
            if stripped and not stripped.startswith("#"):
                self.lines.append((number, stripped))
        self.pos = 0

        self.name = ""
        self.num_processes = 0
        self.state_var = "x"
        self.state_domain: str | None = None
        self.params: dict = {}
        self.init_values: tuple[float, ...] | None = None
        self.init_rule: ExprIR | None = None
        self._init_rule_line: int | None = None
        self.delivery_models: list[DeliveryModelSpec] = []
        self.phases: list[UpdatePhase] = []
        self.metrics = DEFAULT_METRICS

    # -------------------------------------------------------------------------
    # Cursor
    # -------------------------------------------------------------------------

    def _peek(self) -> tuple[int, str] | None:
        return self.lines[self.pos] if self.pos < len(self.lines) else None

    def _last_line_no(self) -> int | None:
        if not self.lines:
            return None
        return self.lines[min(self.pos, len(self.lines) - 1)][0]

    def _header(self, *keywords: str) -> tuple[str, int, str] | None:
        """Match the current line against section headers.

        Returns:
            (keyword, line number, inline content) or None.
        """
        current = self._peek()
        if current is None:
            return None
        line_no, text = current
        m = _HEADER_RE.match(text)
        if m and m.group("kw") in keywords:
            return m.group("kw"), line_no, (m.group("rest") or "").strip()
        return None

    def _section_body(self, line_no: int, inline: str) -> list[tuple[int, str]]:
        """Consume a header's content: inline text plus lines up to the next header."""
        body = [(line_no, inline)] if inline else []
        self.pos += 1
        while self.pos < len(self.lines) and not _HEADER_RE.match(self.lines[self.pos][1]):
            body.append(self.lines[self.pos])
            self.pos += 1
        return body

    def _expect(self, keyword: str, pattern: str) -> tuple[int, str]:
        found = self._header(keyword)
        if found is None:
            current = self._peek()
            got = f", found '{current[1]}'" if current else ", found end of input"
            raise ParseError(self._last_line_no(), f"expected '{pattern}'{got}")
        return found[1], found[2]

    # -------------------------------------------------------------------------
    # Sections
    # -------------------------------------------------------------------------

    def parse(self) -> ProtocolIR:
        if not self.lines:
            raise ParseError(None, "empty protocol text; expected 'PROTOCOL <name>'")
        self._parse_name()
        self._parse_processes()
        self._parse_state()
        self._parse_initialization()
        self._parse_channel_and_roles()

        if self._header("MODEL"):
            self._parse_models()
        if not self.delivery_models:
            self.delivery_models = [DeliveryModelSpec(DeliveryModelType.STANDARD)]

        if self._header("UPDATE RULE"):
            self._parse_update_rule()
        if self._header("METRICS"):
            self._parse_metrics()

        current = self._peek()
        if current is not None:
            raise ParseError(current[0], f"unexpected content '{current[1]}'")

        self.params.setdefault("channel_guarantee", ChannelGuarantee.NONE)
        try:
            return ProtocolIR(
                name=self.name,
                num_processes=self.num_processes,
                init_values=self.init_values,
                init_rule=self.init_rule,
                phases=tuple(self.phases),
                metrics=self.metrics,
                params=self.params,
                delivery_models=tuple(self.delivery_models),
                state_var=self.state_var,
                state_domain=self.state_domain,
            )
        except ValueError as exc:
            raise ParseError(None, str(exc)) from None

    def _parse_name(self) -> None:
        line_no, text = self.lines[0]
        m = _PROTOCOL_RE.match(text)
        if not m:
            raise ParseError(line_no, f"expected 'PROTOCOL <name>', found '{text}'")
        self.name = m.group(1)
        self.pos = 1

    def _parse_processes(self) -> None:
        current = self._peek()
        if current is None or not _PROCESSES_RE.match(current[1]):
            found = f", found '{current[1]}'" if current else ""
            raise ParseError(self._last_line_no(), f"expected 'PROCESSES: <n>'{found}")
        line_no, text = current
        n = int(_PROCESSES_RE.match(text).group(1))
        if n < 1:
            raise ParseError(line_no, "PROCESSES must be a positive integer")
        self.num_processes = n
        self.pos += 1

    def _parse_state(self) -> None:
        line_no, inline = self._expect("STATE", "STATE:")
        body = self._section_body(line_no, inline)
        if len(body) != 1:
            raise ParseError(line_no, "STATE must declare exactly one variable, e.g. 'x ∈ {0,1}'")
        var_line, var_text = body[0]
        m = _STATE_RE.match(var_text)
        if not m:
            raise ParseError(var_line, f"invalid state declaration '{var_text}'")
        self.state_var = m.group(1)
        self.state_domain = m.group(2).strip() if m.group(2) else None

    def _declared_params(self) -> frozenset[str]:
        return frozenset(self.params) - _RESERVED_PARAMS

    def _rules(self) -> RuleParser:
        return RuleParser(self.state_var, self.num_processes, self._declared_params())

    def _parse_initialization(self) -> None:
        seen: set[str] = set()
        while True:
            found = self._header("PARAMETERS", "INITIAL VALUES", "INITIAL")
            if found is None:
                break
            keyword, line_no, inline = found
            if keyword in seen:
                raise ParseError(line_no, f"duplicate {keyword} section")
            if keyword != "PARAMETERS" and seen - {"PARAMETERS"}:
                raise ParseError(line_no, "only one of INITIAL VALUES or INITIAL may be given")
            seen.add(keyword)
            body = self._section_body(line_no, inline)
            if keyword == "PARAMETERS":
                for entry in body:
                    self._parse_parameter(*entry)
            elif keyword == "INITIAL VALUES":
                self._parse_initial_values(line_no, body)
            else:
                self._parse_initial_rule(line_no, body)

        if self.init_values is None and self.init_rule is None:
            current = self._peek()
            found = f", found '{current[1]}'" if current else ""
            raise ParseError(self._last_line_no(), f"expected 'INITIAL VALUES:' or 'INITIAL:'{found}")

        # PARAMETERS may follow INITIAL, so names are checked once both are read.
        if self.init_rule is not None:
            _check_initializer(self.init_rule, self._init_rule_line, self._declared_params() | {"i"})

    def _parse_parameter(self, line_no: int, text: str) -> None:
        m = re.match(
            r"^([A-Za-z_][A-Za-z0-9_]*)\s*(?:∈\s*\[[^\]]+\]\s*)?=\s*([0-9eE.+-]+)\s*$", text
        )
        if not m:
            raise ParseError(line_no, f"invalid parameter '{text}'; expected 'name = value' or 'name ∈ [a,b] = value'")
        try:
            self.params[m.group(1)] = float(m.group(2))
        except ValueError:
            raise ParseError(line_no, f"invalid number '{m.group(2)}' for parameter {m.group(1)}") from None

    def _parse_initial_values(self, header_line: int, body: list[tuple[int, str]]) -> None:
        if len(body) != 1:
            raise ParseError(header_line, "INITIAL VALUES expects one list, e.g. '[0, 1]'")
        line_no, text = body[0]
        m = re.match(r"^\[(.*)\]$", text)
        if not m:
            raise ParseError(line_no, f"expected a list '[v1, v2, ...]', found '{text}'")
        try:
            values = tuple(float(v) for v in m.group(1).split(",") if v.strip())
        except ValueError:
            raise ParseError(line_no, f"INITIAL VALUES must be numbers, found '{text}'") from None
        if len(values) != self.num_processes:
            raise ParseError(
                line_no,
                f"INITIAL VALUES has {len(values)} entries but PROCESSES is {self.num_processes}",
            )
        self.init_values = values

    def _parse_initial_rule(self, header_line: int, body: list[tuple[int, str]]) -> None:
        if len(body) != 1:
            raise ParseError(header_line, "INITIAL expects one rule, e.g. 'xᵢ = i / 2'")
        line_no, text = body[0]
        m = re.match(r"^(.+?)\s*(?:=|←|<-)\s*(.+)$", text)
        if not m:
            raise ParseError(line_no, f"expected '{self.state_var}ᵢ = <expression>', found '{text}'")
        rules = RuleParser(self.state_var, self.num_processes)
        rules._target(m.group(1).strip(), line_no)
        self.init_rule = rules.expr(m.group(2), line_no)
        self._init_rule_line = line_no

    def _parse_channel_and_roles(self) -> None:
        seen: set[str] = set()
        while True:
            found = self._header("CHANNEL", "ROLES")
            if found is None:
                return
            keyword, line_no, inline = found
            if keyword in seen:
                raise ParseError(line_no, f"duplicate {keyword} section")
            seen.add(keyword)
            body = self._section_body(line_no, inline)
            if not body:
                raise ParseError(line_no, f"{keyword} section is empty")
            if keyword == "CHANNEL":
                self._parse_channel(*body[0])
            else:
                self._parse_leader(*body[0])
            if len(body) > 1:
                raise ParseError(body[1][0], f"unexpected content '{body[1][1]}' in {keyword}")

    def _parse_channel(self, line_no: int, text: str) -> None:
        lower = re.sub(r"\s+", " ", text.lower())
        if lower == "stochastic":
            self.params["channel_guarantee"] = ChannelGuarantee.NONE
            return
        m = re.match(r"^stochastic with guarantee (.+)$", lower)
        if not m:
            raise ParseError(line_no, f"unknown channel '{text}'; expected 'stochastic [with guarantee ...]'")
        guarantee = m.group(1).replace(" ", "")
        if guarantee == "at_least(1)":
            self.params["channel_guarantee"] = ChannelGuarantee.AT_LEAST_ONE
        elif guarantee == "majority":
            if self.num_processes < 2:
                raise ParseError(line_no, "majority guarantee requires at least 2 processes")
            self.params["channel_guarantee"] = ChannelGuarantee.MAJORITY
        else:
            raise ParseError(line_no, f"unsupported channel guarantee '{m.group(1)}'")

    def _parse_leader(self, line_no: int, text: str) -> None:
        m = re.match(r"^leader\s*=\s*(\d+)\s*$", text.lower())
        if not m:
            raise ParseError(line_no, "expected 'leader = <int>' in ROLES")
        leader = int(m.group(1))
        if not 1 <= leader <= self.num_processes:
            raise ParseError(line_no, f"leader must be between 1 and {self.num_processes}")
        self.params["leader_id"] = leader

    def _parse_models(self) -> None:
        _, line_no, inline = self._header("MODEL")
        for entry_line, text in self._section_body(line_no, inline):
            m = re.match(r"^process\s+(\d+)\s*:\s*(.+)$", text, re.IGNORECASE)
            if m:
                pid = int(m.group(1))
                if not 1 <= pid <= self.num_processes:
                    raise ParseError(entry_line, f"process id {pid} must be between 1 and {self.num_processes}")
                spec = _parse_model_spec(m.group(2), entry_line, pid)
            else:
                spec = _parse_model_spec(text, entry_line, None)
            if any(s.process_id == spec.process_id for s in self.delivery_models):
                which = "global model" if spec.process_id is None else f"model for process {spec.process_id}"
                raise ParseError(entry_line, f"duplicate {which}")
            self.delivery_models.append(spec)

    def _parse_update_rule(self) -> None:
        _, line_no, inline = self._header("UPDATE RULE")
        body = self._section_body(line_no, inline)
        self.phases = _PhaseReader(body, self._rules()).read()

    def _parse_metrics(self) -> None:
        _, line_no, inline = self._header("METRICS")
        metrics = set()
        for entry_line, text in self._section_body(line_no, inline):
            for name in re.split(r"[,\s]+", text.strip()):
                if not name:
                    continue
                try:
                    metrics.add(Metric(name.lower()))
                except ValueError:
                    raise ParseError(entry_line, f"unknown metric '{name}'; expected discrepancy or consensus") from None
        if metrics:
            self.metrics = frozenset(metrics)


def _check_initializer(expr: ExprIR, line_no: int, names: frozenset[str]) -> None:
    """Initializers may only combine numbers, declared parameters and i."""
    if isinstance(expr, BinOp):
        _check_initializer(expr.left, line_no, names)
        _check_initializer(expr.right, line_no, names)
    elif isinstance(expr, ParamRef):
        if expr.name not in names:
            raise ParseError(line_no, f"undeclared identifier '{expr.name}'; declare it in PARAMETERS")
    elif not isinstance(expr, Literal):
        raise ParseError(line_no, "INITIAL may only use numbers, parameters and i")


def _parse_model_spec(text: str, line_no: int, process_id: int | None) -> DeliveryModelSpec:
    lower = text.strip().lower()
    if lower == "standard":
        return DeliveryModelSpec(DeliveryModelType.STANDARD, {}, process_id)

    if lower.startswith("guaranteed"):
        k = re.search(r"\bk\s*=\s*(\d+)", lower)
        if not k:
            raise ParseError(line_no, "guaranteed model requires 'k=<int>'")
        scope = re.search(r"scope\s*=\s*(\w+)", lower)
        scope_value = scope.group(1) if scope else "per_round"
        if scope_value not in ("per_round", "total"):
            raise ParseError(line_no, f"invalid scope '{scope_value}'; expected per_round or total")
        return DeliveryModelSpec(
            DeliveryModelType.GUARANTEED,
            {"min_messages": int(k.group(1)), "scope": scope_value},
            process_id,
        )

    if lower.startswith("broadcast"):
        prob = re.search(r"probability\s*=\s*(\w+)", lower)
        prob_value = prob.group(1) if prob else "per_source"
        if prob_value not in ("per_source", "uniform"):
            raise ParseError(line_no, f"invalid probability mode '{prob_value}'; expected per_source or uniform")
        return DeliveryModelSpec(DeliveryModelType.BROADCAST, {"probability": prob_value}, process_id)

    raise ParseError(line_no, f"unknown delivery model '{text}'; expected standard, guaranteed or broadcast")


class _PhaseReader:
    """Reads UPDATE RULE content into a list of phases."""

    def __init__(self, lines: list[tuple[int, str]], rules: RuleParser):
        self.lines = lines
        self.rules = rules
        self.idx = 0

    def read(self) -> list[UpdatePhase]:
        phases: list[UpdatePhase] = []
        while self.idx < len(self.lines):
            line_no, text = self.lines[self.idx]
            kind, after, rest = self._phase_header(line_no, text)
            if kind is None:
                rule = self._block()
                phases.append(UpdatePhase(PhaseKind.EACH_ROUND, rule))
                continue
            if kind == PhaseKind.END and any(p.kind == PhaseKind.END for p in phases):
                raise ParseError(line_no, "END phase already defined; only one END phase is allowed")
            if rest:
                self.idx += 1
                rule = self.rules.update(rest, line_no)
            else:
                self.idx += 1
                if self.idx >= len(self.lines):
                    raise ParseError(line_no, f"phase '{text}' must be followed by a rule")
                rule = self._block()
            phases.append(UpdatePhase(kind, rule, after))
        return phases

    def _phase_header(self, line_no: int, text: str):
        for pattern, kind in _PHASE_RE:
            m = pattern.match(text)
            if not m:
                continue
            if kind == PhaseKind.UNTIL_CONSENSUS and m.group("what").lower() != "consensus":
                raise ParseError(line_no, "UNTIL only supports CONSENSUS")
            after = int(m.group("k")) if kind == PhaseKind.AFTER_ROUNDS else None
            return kind, after, m.group("rest").strip()
        if re.match(r"^(EACH|FIRST|AFTER|UNTIL)\b", text):
            raise ParseError(line_no, f"invalid phase header '{text}'")
        return None, None, ""

    def _block(self, text_override: str | None = None) -> UpdateIR:
        """Parse a rule or a multi-line if/else/end block at the cursor."""
        line_no, text = self.lines[self.idx]
        if text_override is not None:
            text = text_override
        elif self._is_block_keyword(text):
            raise ParseError(line_no, f"unexpected '{text}' without a matching 'if'")
        m = _IF_RE.match(text)
        if not m:
            if text.lower().startswith("if "):
                raise ParseError(line_no, "expected 'if <predicate> then'")
            self.idx += 1
            return self.rules.update(text, line_no)
        if m.group(2):
            self.idx += 1
            return self.rules.inline_conditional(text, line_no)

        pred = self.rules.predicate(m.group(1), line_no)
        self.idx += 1
        if self.idx >= len(self.lines) or self._is_block_keyword(self.lines[self.idx][1]):
            raise ParseError(line_no, "conditional requires a rule after 'then'")
        then_rule = self._block()

        if self.idx < len(self.lines):
            next_text = self.lines[self.idx][1]
            if next_text == "else":
                self.idx += 1
                if self.idx >= len(self.lines):
                    raise ParseError(self.lines[self.idx - 1][0], "else branch requires a rule")
                else_rule = self._block()
                self._consume_end()
                return ConditionalElse(pred, then_rule, else_rule)
            m_elif = re.match(r"^else\s+(if\s.*)$", next_text)
            if m_elif:
                # The nested conditional consumes the shared closing `end`.
                else_rule = self._block(text_override=m_elif.group(1))
                return ConditionalElse(pred, then_rule, else_rule)

        self._consume_end()
        return Conditional(pred, then_rule)

    def _consume_end(self) -> None:
        if self.idx < len(self.lines) and self.lines[self.idx][1] == "end":
            self.idx += 1

    @staticmethod
    def _is_block_keyword(text: str) -> bool:
        return text in ("else", "end") or text.startswith("else ")


# =============================================================================
# Entry points
# =============================================================================


def parse_protocol(text: str) -> ProtocolIR:
    """Parse protocol source text into a ProtocolIR.

    Raises:
        ParseError: If the text does not follow the section grammar.
    """
    ir = _ProtocolParser(text).parse()
    logger.debug(
        "protocol_parsed",
        protocol=ir.name,
        num_processes=ir.num_processes,
        phases=len(ir.phases),
    )
    return ir


def parse_protocol_file(path: str | Path) -> ProtocolIR:
    """Read and parse a protocol file."""
    return parse_protocol(Path(path).read_text(encoding="utf-8"))
