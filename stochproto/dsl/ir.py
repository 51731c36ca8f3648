"""
Intermediate representation for parsed protocols.

Every node is a frozen dataclass. The node families (expressions, inbox
predicates, update rules) are closed: the evaluator dispatches on them with
isinstance chains and raises on anything it does not recognise.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Union


# =============================================================================
# Enumerations
# =============================================================================


class BinaryOp(Enum):
    """Arithmetic operators."""

    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"


class AggregateOp(Enum):
    """Aggregation functions over a set of received values."""

    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class AggregateSource(Enum):
    """Which values an unfiltered aggregate ranges over."""

    INBOX = "inbox"
    INBOX_WITH_SELF = "inbox_with_self"


class ComparisonOp(Enum):
    """Comparison operators usable in predicates."""

    GTE = ">="
    LTE = "<="
    NEQ = "!="
    EQ = "=="
    GT = ">"
    LT = "<"


class LogicalOpKind(Enum):
    AND = "and"
    OR = "or"
    NOT = "not"


class SimpleOpKind(Enum):
    """Legacy whole-rule operators applied to self plus inbox values."""

    AVERAGE = "average"
    MIN = "min"
    MAX = "max"
    MIDPOINT = "midpoint"


class PhaseKind(Enum):
    """When an update phase is active."""

    EACH_ROUND = "each_round"
    FIRST_ROUND = "first_round"
    AFTER_ROUNDS = "after_rounds"
    UNTIL_CONSENSUS = "until_consensus"
    END = "end"


class Metric(Enum):
    DISCREPANCY = "discrepancy"
    CONSENSUS = "consensus"


class DeliveryModelType(Enum):
    STANDARD = "standard"
    GUARANTEED = "guaranteed"
    BROADCAST = "broadcast"


class ChannelGuarantee(Enum):
    """Legacy CHANNEL guarantees, enforced by topping up inboxes."""

    NONE = "none"
    AT_LEAST_ONE = "at_least_one"
    MAJORITY = "majority"


# =============================================================================
# Expressions
# =============================================================================


@dataclass(frozen=True)
class SelfValue:
    """The evaluating process's current value of x."""


@dataclass(frozen=True)
class ParamRef:
    """Reference to a named parameter such as a meeting point."""

    name: str


@dataclass(frozen=True)
class Literal:
    value: float


@dataclass(frozen=True)
class BinOp:
    op: BinaryOp
    left: "ExprIR"
    right: "ExprIR"


@dataclass(frozen=True)
class Aggregate:
    op: AggregateOp
    source: AggregateSource


@dataclass(frozen=True)
class FilteredAggregate:
    """Aggregate restricted to messages from the given senders.

    Attributes:
        op: Aggregation function.
        sender_ids: 1-based ids of the senders whose values are included.
        include_self: Whether the evaluating process's own value is added.
    """

    op: AggregateOp
    sender_ids: tuple[int, ...]
    include_self: bool = False


@dataclass(frozen=True)
class ReceivedOtherValue:
    """The single distinct received value that differs from our own."""


@dataclass(frozen=True)
class ValueFrom:
    sender_id: int


ExprIR = Union[
    SelfValue,
    ParamRef,
    Literal,
    BinOp,
    Aggregate,
    FilteredAggregate,
    ReceivedOtherValue,
    ValueFrom,
]


# =============================================================================
# Inbox predicates
# =============================================================================


@dataclass(frozen=True)
class ReceivedAny:
    pass


@dataclass(frozen=True)
class ReceivedAll:
    """True when a message arrived from every other process."""


@dataclass(frozen=True)
class ReceivedAtLeast:
    k: int


@dataclass(frozen=True)
class ReceivedMajority:
    """True when strictly more than N/2 messages arrived."""


@dataclass(frozen=True)
class ReceivedDiff:
    """True when some received value differs from the pre-round own value."""

    var: str = "x"


@dataclass(frozen=True)
class ReceivedFrom:
    sender_id: int


@dataclass(frozen=True)
class IsLeader:
    pass


@dataclass(frozen=True)
class Comparison:
    op: ComparisonOp
    left: ExprIR
    right: ExprIR


@dataclass(frozen=True)
class LogicalOp:
    op: LogicalOpKind
    operands: tuple["PredicateIR", ...]


PredicateIR = Union[
    ReceivedAny,
    ReceivedAll,
    ReceivedAtLeast,
    ReceivedMajority,
    ReceivedDiff,
    ReceivedFrom,
    IsLeader,
    Comparison,
    LogicalOp,
]


# =============================================================================
# Update rules
# =============================================================================


@dataclass(frozen=True)
class Var:
    name: str


@dataclass(frozen=True)
class IndexedVar:
    """`xᵢ`, `x_i` or `x[i]`: the variable indexed by the evaluating process."""

    name: str
    index: str = "self"


AssignTarget = Union[Var, IndexedVar]


@dataclass(frozen=True)
class Assign:
    target: AssignTarget
    expr: ExprIR


@dataclass(frozen=True)
class SimpleOp:
    op: SimpleOpKind


@dataclass(frozen=True)
class IfReceivedDiff:
    then_expr: ExprIR
    else_expr: ExprIR


@dataclass(frozen=True)
class Conditional:
    """Conditional without an else branch; the implicit else keeps x."""

    predicate: PredicateIR
    rule: "UpdateIR"


@dataclass(frozen=True)
class ConditionalElse:
    predicate: PredicateIR
    then_rule: "UpdateIR"
    else_rule: "UpdateIR"


UpdateIR = Union[Assign, SimpleOp, IfReceivedDiff, Conditional, ConditionalElse]


# =============================================================================
# Phases, delivery models, protocol
# =============================================================================


@dataclass(frozen=True)
class UpdatePhase:
    """A rule together with the rounds in which it runs.

    Attributes:
        kind: Activation kind.
        rule: Update rule applied when active.
        after: Round threshold for AFTER_ROUNDS (active when round > after).
    """

    kind: PhaseKind
    rule: UpdateIR
    after: int | None = None

    def __post_init__(self) -> None:
        if self.kind == PhaseKind.AFTER_ROUNDS and (self.after is None or self.after < 0):
            raise ValueError(f"AFTER_ROUNDS phase needs a non-negative round count, got {self.after}")


@dataclass(frozen=True)
class DeliveryModelSpec:
    """Declared delivery model.

    Attributes:
        model_type: Standard, guaranteed or broadcast.
        params: Model parameters: `min_messages` and `scope` for guaranteed,
            `probability` for broadcast.
        process_id: Process this spec overrides, or None for the global default.
    """

    model_type: DeliveryModelType
    params: dict = field(default_factory=dict)
    process_id: int | None = None


DEFAULT_METRICS = frozenset({Metric.DISCREPANCY, Metric.CONSENSUS})


@dataclass(frozen=True)
class ProtocolIR:
    """A parsed, validated protocol definition.

    Exactly one of `init_values` and `init_rule` is set. `init_rule` is either
    an expression in which the parameter `i` is the 1-based process index, or
    a plain callable taking the process index.

    Attributes:
        name: Protocol name.
        num_processes: Number of processes N.
        init_values: Initial x per process, length N.
        init_rule: Initializer evaluated per process.
        phases: Update phases in declaration order.
        metrics: Requested metrics.
        params: Named parameters plus engine keys (`leader_id`,
            `channel_guarantee`).
        delivery_models: Declared delivery models.
        state_var: Name of the state variable.
        state_domain: Advisory domain annotation from STATE.
    """

    name: str
    num_processes: int
    init_values: tuple[float, ...] | None = None
    init_rule: ExprIR | Callable[[int], float] | None = None
    phases: tuple[UpdatePhase, ...] = ()
    metrics: frozenset = DEFAULT_METRICS
    params: dict = field(default_factory=dict)
    delivery_models: tuple[DeliveryModelSpec, ...] = (
        DeliveryModelSpec(DeliveryModelType.STANDARD),
    )
    state_var: str = "x"
    state_domain: str | None = None

    def __post_init__(self) -> None:
        if self.num_processes < 1:
            raise ValueError(f"num_processes must be positive, got {self.num_processes}")
        if (self.init_values is None) == (self.init_rule is None):
            raise ValueError("Exactly one of init_values and init_rule must be given")
        if self.init_values is not None and len(self.init_values) != self.num_processes:
            raise ValueError(
                f"init_values has {len(self.init_values)} entries, "
                f"expected {self.num_processes}"
            )
        if not self.metrics:
            raise ValueError("At least one metric is required")
        if not self.delivery_models:
            raise ValueError("At least one delivery model is required")
        if sum(1 for p in self.phases if p.kind == PhaseKind.END) > 1:
            raise ValueError("At most one END phase is allowed")
        global_specs = [s for s in self.delivery_models if s.process_id is None]
        if len(global_specs) > 1:
            raise ValueError("Only one global delivery model may be declared")

    @property
    def has_end_phase(self) -> bool:
        return any(p.kind == PhaseKind.END for p in self.phases)

    @property
    def leader_id(self) -> int | None:
        leader = self.params.get("leader_id")
        return int(leader) if leader is not None else None

    @property
    def channel_guarantee(self) -> ChannelGuarantee:
        return self.params.get("channel_guarantee", ChannelGuarantee.NONE)
