"""
Compiler and evaluator for protocol IR.

`compile_protocol` binds a ProtocolIR to a delivery probability and a round
count, producing an ExperimentSpec the round engine can execute. The
evaluate_* functions interpret IR nodes against an EvalContext holding one
process's view of a single round.
"""

from dataclasses import dataclass, field, replace
from typing import Callable

from ..errors import EvaluationError
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
    ExprIR,
    FilteredAggregate,
    IfReceivedDiff,
    IsLeader,
    Literal,
    LogicalOp,
    LogicalOpKind,
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
)


@dataclass(frozen=True)
class EvalContext:
    """One process's view of the current round.

    Attributes:
        x_self: Current value of x. Phases chain, so this may already reflect
            an earlier phase of the same round.
        snapshot_x: The process's own value before the round began.
        inbox: Delivered (sender, value) pairs in delivery order.
        num_nodes: Number of processes N.
        node_id: 1-based id of the evaluating process.
        leader_id: Leader declared in ROLES, if any.
        params: Numeric protocol parameters.
        state_snapshot: Pre-round x of every process, indexed by id - 1.
    """

    x_self: float
    snapshot_x: float
    inbox: tuple[tuple[int, float], ...] = ()
    num_nodes: int = 1
    node_id: int = 1
    leader_id: int | None = None
    params: dict = field(default_factory=dict)
    state_snapshot: tuple[float, ...] = ()

    @property
    def inbox_values(self) -> list[float]:
        return [value for _, value in self.inbox]

    @property
    def senders(self) -> list[int]:
        return [sender for sender, _ in self.inbox]

    @property
    def diff_values(self) -> list[float]:
        """Received values that differ from the pre-round own value."""
        return [value for _, value in self.inbox if value != self.snapshot_x]


# =============================================================================
# Expressions
# =============================================================================


def _aggregate(op: AggregateOp, values: list[float]) -> float:
    if not values:
        raise EvaluationError(f"Cannot aggregate {op.value} over an empty set of values")
    if op == AggregateOp.SUM:
        return float(sum(values))
    if op == AggregateOp.AVG:
        return float(sum(values)) / len(values)
    if op == AggregateOp.MIN:
        return float(min(values))
    if op == AggregateOp.MAX:
        return float(max(values))
    if op == AggregateOp.COUNT:
        return float(len(values))
    raise EvaluationError(f"Unknown aggregation operator: {op}")


def evaluate_expr(expr: ExprIR, ctx: EvalContext) -> float:
    """Evaluate an expression node.

    Raises:
        EvaluationError: On division by zero, a missing parameter, an empty
            aggregation, or a value_from sender with no message this round.
    """
    if isinstance(expr, SelfValue):
        return ctx.x_self

    if isinstance(expr, Literal):
        return expr.value

    if isinstance(expr, ParamRef):
        if expr.name not in ctx.params:
            raise EvaluationError(f"Parameter '{expr.name}' not provided; declare it in PARAMETERS")
        return float(ctx.params[expr.name])

    if isinstance(expr, BinOp):
        left = evaluate_expr(expr.left, ctx)
        right = evaluate_expr(expr.right, ctx)
        if expr.op == BinaryOp.ADD:
            return left + right
        if expr.op == BinaryOp.SUB:
            return left - right
        if expr.op == BinaryOp.MUL:
            return left * right
        if expr.op == BinaryOp.DIV:
            if right == 0.0:
                raise EvaluationError("Division by zero in expression")
            return left / right
        raise EvaluationError(f"Unknown binary operator: {expr.op}")

    if isinstance(expr, Aggregate):
        if expr.source == AggregateSource.INBOX:
            values = ctx.inbox_values
        elif expr.source == AggregateSource.INBOX_WITH_SELF:
            values = [ctx.x_self] + ctx.inbox_values
        else:
            raise EvaluationError(f"Unknown aggregation source: {expr.source}")
        return _aggregate(expr.op, values)

    if isinstance(expr, FilteredAggregate):
        wanted = set(expr.sender_ids)
        values = [value for sender, value in ctx.inbox if sender in wanted]
        if expr.include_self:
            values = [ctx.x_self] + values
        return _aggregate(expr.op, values)

    if isinstance(expr, ReceivedOtherValue):
        distinct = sorted(set(ctx.diff_values))
        if not distinct:
            raise EvaluationError("received_other requires a differing value but none was received")
        if len(distinct) > 1:
            raise EvaluationError(
                f"received_other found {len(distinct)} distinct differing values; "
                "it is only defined when exactly one other value is received"
            )
        return distinct[0]

    if isinstance(expr, ValueFrom):
        for sender, value in ctx.inbox:
            if sender == expr.sender_id:
                return value
        raise EvaluationError(
            f"value_from({expr.sender_id}): no message from process {expr.sender_id} "
            f"reached process {ctx.node_id} this round"
        )

    raise EvaluationError(f"Unsupported expression node: {type(expr).__name__}")


# =============================================================================
# Predicates
# =============================================================================


def _compare(op: ComparisonOp, left: float, right: float) -> bool:
    if op == ComparisonOp.GT:
        return left > right
    if op == ComparisonOp.LT:
        return left < right
    if op == ComparisonOp.GTE:
        return left >= right
    if op == ComparisonOp.LTE:
        return left <= right
    if op == ComparisonOp.EQ:
        return left == right
    if op == ComparisonOp.NEQ:
        return left != right
    raise EvaluationError(f"Unknown comparison operator: {op}")


def evaluate_predicate(pred: PredicateIR, ctx: EvalContext) -> bool:
    """Evaluate an inbox predicate."""
    if isinstance(pred, ReceivedAny):
        return len(ctx.inbox) > 0

    if isinstance(pred, ReceivedAll):
        others = set(ctx.senders) - {ctx.node_id}
        return len(others) >= ctx.num_nodes - 1

    if isinstance(pred, ReceivedAtLeast):
        return len(ctx.inbox) >= pred.k

    if isinstance(pred, ReceivedMajority):
        return len(ctx.inbox) > ctx.num_nodes / 2

    if isinstance(pred, ReceivedDiff):
        return len(ctx.diff_values) > 0

    if isinstance(pred, ReceivedFrom):
        return pred.sender_id in ctx.senders

    if isinstance(pred, IsLeader):
        if ctx.leader_id is None:
            raise EvaluationError("'self is leader' used but no leader is declared in ROLES")
        return ctx.node_id == ctx.leader_id

    if isinstance(pred, Comparison):
        return _compare(pred.op, evaluate_expr(pred.left, ctx), evaluate_expr(pred.right, ctx))

    if isinstance(pred, LogicalOp):
        if pred.op == LogicalOpKind.NOT:
            if len(pred.operands) != 1:
                raise EvaluationError("'not' requires exactly one operand")
            return not evaluate_predicate(pred.operands[0], ctx)
        if pred.op == LogicalOpKind.AND:
            return all(evaluate_predicate(p, ctx) for p in pred.operands)
        if pred.op == LogicalOpKind.OR:
            return any(evaluate_predicate(p, ctx) for p in pred.operands)
        raise EvaluationError(f"Unknown logical operator: {pred.op}")

    raise EvaluationError(f"Unsupported predicate node: {type(pred).__name__}")


# =============================================================================
# Update rules and phases
# =============================================================================


def evaluate_update(rule: UpdateIR, ctx: EvalContext) -> float:
    """Evaluate an update rule, returning the new value of x."""
    if isinstance(rule, Assign):
        return evaluate_expr(rule.expr, ctx)

    if isinstance(rule, ConditionalElse):
        branch = rule.then_rule if evaluate_predicate(rule.predicate, ctx) else rule.else_rule
        return evaluate_update(branch, ctx)

    if isinstance(rule, Conditional):
        if evaluate_predicate(rule.predicate, ctx):
            return evaluate_update(rule.rule, ctx)
        return ctx.x_self

    if isinstance(rule, IfReceivedDiff):
        chosen = rule.then_expr if ctx.diff_values else rule.else_expr
        return evaluate_expr(chosen, ctx)

    if isinstance(rule, SimpleOp):
        values = [ctx.x_self] + ctx.inbox_values
        if rule.op == SimpleOpKind.AVERAGE:
            return sum(values) / len(values)
        if rule.op == SimpleOpKind.MIN:
            return min(values)
        if rule.op == SimpleOpKind.MAX:
            return max(values)
        if rule.op == SimpleOpKind.MIDPOINT:
            return (min(values) + max(values)) / 2
        raise EvaluationError(f"Unsupported update operator: {rule.op}")

    raise EvaluationError(f"Unsupported update rule: {type(rule).__name__}")


def phase_active(phase: UpdatePhase, round_idx: int, consensus_flag: bool) -> bool:
    """Whether a non-END phase runs in the given 1-based round.

    Args:
        phase: The phase.
        round_idx: Current round, starting at 1.
        consensus_flag: Whether consensus held at the start of the round.
    """
    if phase.kind == PhaseKind.EACH_ROUND:
        return True
    if phase.kind == PhaseKind.FIRST_ROUND:
        return round_idx == 1
    if phase.kind == PhaseKind.AFTER_ROUNDS:
        return round_idx > (phase.after or 0)
    if phase.kind == PhaseKind.UNTIL_CONSENSUS:
        return not consensus_flag
    return False


class CompiledProtocol:
    """Executable form of a protocol's update phases.

    Args:
        phases: Phases in declaration order.
        num_nodes: Number of processes.
        params: Numeric parameters visible to expressions.
        leader_id: Declared leader, if any.
    """

    def __init__(
        self,
        phases: tuple[UpdatePhase, ...],
        num_nodes: int,
        params: dict,
        leader_id: int | None = None,
    ):
        self.phases = phases
        self.round_phases = tuple(p for p in phases if p.kind != PhaseKind.END)
        self.end_phases = tuple(p for p in phases if p.kind == PhaseKind.END)
        self.num_nodes = num_nodes
        self.params = params
        self.leader_id = leader_id

    @property
    def has_end_phase(self) -> bool:
        return bool(self.end_phases)

    def _context(
        self,
        node_id: int,
        snapshot: tuple[float, ...],
        inbox: tuple[tuple[int, float], ...],
    ) -> EvalContext:
        own = snapshot[node_id - 1]
        return EvalContext(
            x_self=own,
            snapshot_x=own,
            inbox=inbox,
            num_nodes=self.num_nodes,
            node_id=node_id,
            leader_id=self.leader_id,
            params=self.params,
            state_snapshot=snapshot,
        )

    def _run_phases(self, phases, ctx: EvalContext) -> float:
        x_new = ctx.x_self
        for phase in phases:
            x_new = evaluate_update(phase.rule, replace(ctx, x_self=x_new))
        return x_new

    def apply(
        self,
        node_id: int,
        snapshot: tuple[float, ...],
        inbox: tuple[tuple[int, float], ...],
        round_idx: int,
        consensus_flag: bool,
    ) -> float:
        """Compute a process's provisional value for one round.

        Args:
            node_id: 1-based process id.
            snapshot: Pre-round values of all processes.
            inbox: Delivered (sender, value) pairs.
            round_idx: Current round, starting at 1.
            consensus_flag: Whether consensus held at the start of the round.

        Returns:
            The new value of x.
        """
        active = [p for p in self.round_phases if phase_active(p, round_idx, consensus_flag)]
        return self._run_phases(active, self._context(node_id, snapshot, inbox))

    def apply_end(
        self,
        node_id: int,
        snapshot: tuple[float, ...],
        inbox: tuple[tuple[int, float], ...],
    ) -> float:
        """Run the END phase once for a process."""
        return self._run_phases(self.end_phases, self._context(node_id, snapshot, inbox))


class ExprInitializer:
    """Initial value rule evaluated with `i` bound to the process index."""

    def __init__(self, expr: ExprIR, params: dict):
        self.expr = expr
        self.params = params

    def __call__(self, process_index: int) -> float:
        params = dict(self.params)
        params["i"] = float(process_index)
        ctx = EvalContext(x_self=0.0, snapshot_x=0.0, node_id=process_index, params=params)
        return evaluate_expr(self.expr, ctx)

    def __repr__(self) -> str:
        return f"ExprInitializer({self.expr!r})"


class ValuesInitializer:
    """Initial values taken from an explicit list."""

    def __init__(self, values: tuple[float, ...]):
        self.values = values

    def __call__(self, process_index: int) -> float:
        return float(self.values[process_index - 1])

    def __repr__(self) -> str:
        return f"ValuesInitializer({list(self.values)})"


@dataclass(frozen=True)
class ExperimentSpec:
    """Everything needed to execute one run of a protocol.

    Attributes:
        name: Protocol name.
        num_processes: Number of processes.
        rounds: Number of synchronous rounds.
        p: Per-message delivery probability.
        protocol: Compiled update phases.
        init_state: Maps a 1-based process id to its initial x.
        delivery_models: Declared delivery models.
        channel_guarantee: Legacy CHANNEL guarantee.
        topology: Optional communication graph restricting who can talk.
        faults: Optional fault model applied before delivery.
    """

    name: str
    num_processes: int
    rounds: int
    p: float
    protocol: CompiledProtocol
    init_state: Callable[[int], float]
    delivery_models: tuple[DeliveryModelSpec, ...]
    channel_guarantee: ChannelGuarantee = ChannelGuarantee.NONE
    topology: object | None = None
    faults: object | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.p <= 1.0:
            raise ValueError(f"p must be in [0, 1], got {self.p}")
        if self.rounds < 0:
            raise ValueError(f"rounds must be non-negative, got {self.rounds}")

    @property
    def has_end_phase(self) -> bool:
        return self.protocol.has_end_phase

    @property
    def trace_length(self) -> int:
        """Length of every run's discrepancy-by-round trace."""
        return self.rounds + 1 + (1 if self.has_end_phase else 0)


def _numeric_params(params: dict) -> dict:
    return {
        k: v for k, v in params.items()
        if isinstance(v, (int, float)) and not isinstance(v, bool)
    }


def compile_protocol(
    ir: ProtocolIR,
    p: float,
    rounds: int,
    topology=None,
    faults=None,
) -> ExperimentSpec:
    """Bind a parsed protocol to a delivery probability and round count.

    Args:
        ir: Parsed protocol.
        p: Per-message delivery probability in [0, 1].
        rounds: Number of rounds to simulate.
        topology: Optional Topology restricting communication.
        faults: Optional FaultModel.

    Returns:
        An executable ExperimentSpec.
    """
    params = _numeric_params(ir.params)
    if ir.init_values is not None:
        init_state = ValuesInitializer(ir.init_values)
    elif callable(ir.init_rule):
        init_state = ir.init_rule
    else:
        init_state = ExprInitializer(ir.init_rule, params)

    protocol = CompiledProtocol(
        phases=ir.phases,
        num_nodes=ir.num_processes,
        params=params,
        leader_id=ir.leader_id,
    )
    return ExperimentSpec(
        name=ir.name,
        num_processes=ir.num_processes,
        rounds=rounds,
        p=float(p),
        protocol=protocol,
        init_state=init_state,
        delivery_models=ir.delivery_models,
        channel_guarantee=ir.channel_guarantee,
        topology=topology,
        faults=faults,
    )
