"""
A small declarative language for comparing two protocols over a p sweep.

A condition block is a sequence of

    for p > 0.6:
        AMP.consensus > FV.consensus

pairs. Each pair selects the p values above (or below) the threshold and
compares the mean of one metric between the two protocols. Aliases are the
protocol names, or the literal A and B.
"""

import operator
import re
from dataclasses import dataclass, field

import structlog

from .api import DEFAULT_P_VALUES, ProtocolRun, run_protocol
from .errors import ParseError, ProtocolError, wrap_errors
from .simulation.metrics import DEFAULT_CONSENSUS_EPS

logger = structlog.get_logger(system="comparisons")

_HEADER_RE = re.compile(r"^for\s+p\s*([<>])\s*([0-9eE.+\-]+)\s*:\s*$")
_COMPARISON_RE = re.compile(
    r"^([A-Za-z_][\w\-]*)\.(consensus|discrepancy)\s*(>=|<=|>|<)\s*([A-Za-z_][\w\-]*)\.(consensus|discrepancy)\s*$"
)

COMPARATORS = {">": operator.gt, "<": operator.lt, ">=": operator.ge, "<=": operator.le}
_SWAPPED = {">": "<", "<": ">", ">=": "<=", "<=": ">="}


@dataclass(frozen=True)
class ConditionSpec:
    """One comparison, always oriented as A <comparator> B.

    Attributes:
        selector: ">" or "<" against the p threshold.
        threshold: p threshold.
        metric: "consensus" or "discrepancy".
        comparator: One of >, <, >=, <=.
    """

    selector: str
    threshold: float
    metric: str
    comparator: str

    def selects(self, p: float) -> bool:
        return p > self.threshold if self.selector == ">" else p < self.threshold


@dataclass
class ComparisonResult:
    """Outcome of a successful comparison."""

    protocol_a: str
    protocol_b: str
    run_a: ProtocolRun
    run_b: ProtocolRun
    p_values: list[float]
    success: bool
    details: str
    conditions: list[ConditionSpec] = field(default_factory=list)

    def __repr__(self) -> str:
        status = "passed" if self.success else "failed"
        return f"ComparisonResult({self.protocol_a} vs {self.protocol_b}, {status})"


def _orient(line_no: int, line: str, name_a: str, name_b: str, selector: str, threshold: float) -> ConditionSpec:
    match = _COMPARISON_RE.match(line)
    if match is None:
        raise ParseError(line_no, f"invalid metric comparison '{line}', expected e.g. '{name_a}.consensus > {name_b}.consensus'")
    left, left_metric, comparator, right, right_metric = match.groups()
    if left_metric != right_metric:
        raise ParseError(line_no, f"metric mismatch in '{line}': both sides must use the same metric")

    aliases_a = {name_a, "A"}
    aliases_b = {name_b, "B"}
    if left in aliases_a and right in aliases_b:
        return ConditionSpec(selector, threshold, left_metric, comparator)
    if left in aliases_b and right in aliases_a:
        return ConditionSpec(selector, threshold, left_metric, _SWAPPED[comparator])
    raise ParseError(line_no, f"invalid protocol aliases in '{line}', use {name_a} and {name_b} (or A and B)")


def parse_conditions(text: str | None, name_a: str = "A", name_b: str = "B") -> list[ConditionSpec]:
    """Parse a condition block.

    Args:
        text: Condition source; None or blank gives no conditions.
        name_a: Name of the first protocol.
        name_b: Name of the second protocol.

    Raises:
        ParseError: On a malformed header or comparison line.
    """
    if not text:
        return []
    lines = [(no, raw.strip()) for no, raw in enumerate(text.splitlines(), start=1) if raw.strip()]

    conditions = []
    idx = 0
    while idx < len(lines):
        line_no, line = lines[idx]
        if not line.startswith("for "):
            raise ParseError(line_no, f"unexpected line '{line}', use 'for p > c:' followed by a metric comparison")
        header = _HEADER_RE.match(line)
        if header is None:
            raise ParseError(line_no, f"invalid condition header '{line}', expected 'for p > c:' or 'for p < c:'")
        if idx + 1 >= len(lines):
            raise ParseError(line_no, f"expected a metric comparison after '{line}'")
        try:
            threshold = float(header.group(2))
        except ValueError:
            raise ParseError(line_no, f"invalid threshold '{header.group(2)}'") from None
        cmp_no, cmp_line = lines[idx + 1]
        conditions.append(_orient(cmp_no, cmp_line, name_a, name_b, header.group(1), threshold))
        idx += 2
    return conditions


def _metric_values(run: ProtocolRun, metric: str) -> list[float]:
    if metric == "consensus":
        return [r.consensus_probability for r in run]
    if metric == "discrepancy":
        return [r.mean_discrepancy for r in run]
    raise ValueError(f"Unsupported metric: {metric!r}")


def evaluate_conditions(
    run_a: ProtocolRun,
    run_b: ProtocolRun,
    conditions: list[ConditionSpec],
) -> tuple[bool, str]:
    """Check every condition against the two runs.

    Returns:
        (success, details). Evaluation stops at the first failing condition.
    """
    if not conditions:
        return True, "No conditions provided; nothing to compare."

    ps = run_a.p_values
    messages = []
    for cond in conditions:
        mask = [cond.selects(p) for p in ps]
        if not any(mask):
            return False, f"No p values satisfy condition 'p {cond.selector} {cond.threshold}'."
        vals_a = [v for v, keep in zip(_metric_values(run_a, cond.metric), mask) if keep]
        vals_b = [v for v, keep in zip(_metric_values(run_b, cond.metric), mask) if keep]
        mean_a = sum(vals_a) / len(vals_a)
        mean_b = sum(vals_b) / len(vals_b)

        if not COMPARATORS[cond.comparator](mean_a, mean_b):
            return False, "\n".join(
                [
                    "Comparison failed",
                    "",
                    f"Condition: p {cond.selector} {cond.threshold}",
                    f"Metric: {cond.metric}",
                    f"{run_a.name} mean = {mean_a}",
                    f"{run_b.name} mean = {mean_b}",
                    f"Expected: {run_a.name} {cond.comparator} {run_b.name}",
                ]
            )
        messages.append(
            f"Comparison passed: {run_a.name}.{cond.metric} {cond.comparator} "
            f"{run_b.name}.{cond.metric} for p {cond.selector} {cond.threshold}"
        )
    return True, "\n".join(messages)


def compare(
    protocol_a,
    protocol_b,
    conditions: str | None,
    p_values=DEFAULT_P_VALUES,
    rounds: int = 1,
    repetitions: int = 2000,
    seed: int = 123,
    consensus_eps: float = DEFAULT_CONSENSUS_EPS,
    debug: bool = False,
) -> ComparisonResult:
    """Run two protocols under identical settings and check comparative statements.

    Args:
        protocol_a: Protocol text, path or ProtocolRun.
        protocol_b: Protocol text, path or ProtocolRun.
        conditions: Condition block (see module docstring).
        p_values: Delivery probabilities to sweep.
        rounds: Rounds per run.
        repetitions: Valid runs per p value.
        seed: Base seed shared by both protocols.
        consensus_eps: Consensus threshold.
        debug: Re-raise internal errors unchanged.

    Returns:
        ComparisonResult when every condition holds.

    Raises:
        ProtocolError: When a condition fails, the p grids differ, or (with
            debug False) anything else goes wrong.
    """
    with wrap_errors(debug):
        kwargs = dict(
            p_values=p_values,
            rounds=rounds,
            repetitions=repetitions,
            seed=seed,
            consensus_eps=consensus_eps,
            debug=debug,
        )
        run_a = run_protocol(protocol_a, **kwargs)
        run_b = run_protocol(protocol_b, **kwargs)
        if run_a.p_values != run_b.p_values:
            raise ProtocolError("Comparison inputs have incompatible p grids.")

        specs = parse_conditions(conditions, run_a.name, run_b.name)
        success, details = evaluate_conditions(run_a, run_b, specs)
        logger.info("comparison_evaluated", protocol_a=run_a.name, protocol_b=run_b.name, success=success)
        if not success:
            raise ProtocolError(details)
        return ComparisonResult(
            protocol_a=run_a.name,
            protocol_b=run_b.name,
            run_a=run_a,
            run_b=run_b,
            p_values=list(run_a.p_values),
            success=success,
            details=details,
            conditions=specs,
        )
