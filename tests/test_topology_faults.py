"""
Tests for communication topologies and fault models.
"""

import numpy as np
import pytest

from stochproto.simulation.messages import Message, broadcast_all
from stochproto.simulation.topology import (
    BipartiteGraph,
    CompleteGraph,
    CustomTopology,
    Grid,
    KRegular,
    RandomGraph,
    Ring,
    Star,
)
from stochproto.simulation.faults import (
    EXTREME_VALUE,
    ByzantineFaults,
    CompositeFaults,
    CrashFaults,
    MessageCorruption,
    NetworkPartition,
    NoFaults,
)


# =============================================================================
# Topologies
# =============================================================================


class TestTopologies:
    def test_complete_graph(self):
        topo = CompleteGraph()
        assert topo.neighbors(2, 4) == {1, 3, 4}
        assert topo.diameter(4) == 1
        assert topo.diameter(1) == 0

    def test_ring(self):
        topo = Ring()
        assert topo.neighbors(1, 5) == {5, 2}
        assert topo.neighbors(5, 5) == {4, 1}
        assert topo.diameter(6) == 3
        assert topo.neighbors(1, 1) == set()

    def test_star(self):
        topo = Star()
        assert topo.neighbors(1, 4) == {2, 3, 4}
        assert topo.neighbors(3, 4) == {1}
        assert topo.diameter(4) == 2
        assert topo.diameter(2) == 1

    def test_grid(self):
        topo = Grid(2, 3)
        assert topo.neighbors(1, 6) == {2, 4}
        assert topo.neighbors(5, 6) == {2, 4, 6}
        assert topo.diameter(6) == 3

    def test_grid_size_mismatch(self):
        with pytest.raises(ValueError, match="does not match"):
            Grid(2, 3).neighbors(1, 5)
        with pytest.raises(ValueError, match="must be positive"):
            Grid(0, 3)

    def test_random_graph_is_reproducible(self):
        a = RandomGraph(0.5, seed=3)
        b = RandomGraph(0.5, seed=3)
        assert all(a.neighbors(i, 8) == b.neighbors(i, 8) for i in range(1, 9))
        assert all(i not in a.neighbors(i, 8) for i in range(1, 9))

    def test_random_graph_extremes(self):
        assert RandomGraph(0.0).neighbors(1, 5) == set()
        assert RandomGraph(1.0).neighbors(1, 5) == {2, 3, 4, 5}
        assert RandomGraph(0.0).diameter(3) == -1

    def test_k_regular(self):
        topo = KRegular(2)
        assert topo.neighbors(1, 6) == {6, 2}
        assert all(len(topo.neighbors(i, 6)) == 2 for i in range(1, 7))
        assert len(KRegular(3).neighbors(1, 6)) == 3

    def test_k_regular_too_large(self):
        with pytest.raises(ValueError, match="k must be less than"):
            KRegular(4).neighbors(1, 4)

    def test_bipartite(self):
        topo = BipartiteGraph(2, 3)
        assert topo.neighbors(1, 5) == {3, 4, 5}
        assert topo.neighbors(4, 5) == {1, 2}
        assert topo.diameter(5) == 2

    def test_custom_topology(self):
        adjacency = [
            [False, True, False],
            [False, False, True],
            [True, True, False],
        ]
        topo = CustomTopology(adjacency)
        assert topo.neighbors(1, 3) == {2}
        assert topo.neighbors(3, 3) == {1, 2}
        assert topo.can_communicate(2, 3, 3)
        assert not topo.can_communicate(2, 1, 3)
        assert topo.diameter(3) == 2

    def test_custom_topology_validation(self):
        with pytest.raises(ValueError, match="square"):
            CustomTopology(np.ones((2, 3)))
        with pytest.raises(ValueError, match="does not match"):
            CustomTopology(np.ones((3, 3))).neighbors(1, 4)


# =============================================================================
# Faults
# =============================================================================


class TestNoFaults:
    def test_passthrough(self):
        messages = broadcast_all([0.0, 1.0, 0.5])
        assert NoFaults().apply(messages, 1) == messages


class TestCrashFaults:
    def test_crash_after_round(self):
        faults = CrashFaults(crash_prob=1.0, crash_round=3)
        assert not faults.is_faulty(1, 2)
        assert faults.is_faulty(1, 3)
        assert faults.apply(broadcast_all([0.0, 1.0]), 3) == []

    def test_crash_set_is_reproducible(self):
        a = CrashFaults(crash_prob=0.5, crash_round=1, seed=9)
        b = CrashFaults(crash_prob=0.5, crash_round=1, seed=9)
        assert a.crashed_nodes(20) == b.crashed_nodes(20)

    def test_validation(self):
        with pytest.raises(ValueError, match="crash_prob"):
            CrashFaults(crash_prob=1.5, crash_round=1)
        with pytest.raises(ValueError, match="crash_round"):
            CrashFaults(crash_prob=0.5, crash_round=0)


class TestByzantineFaults:
    @pytest.mark.parametrize(
        "strategy,expected",
        [("max_value", EXTREME_VALUE), ("min_value", -EXTREME_VALUE), ("opposite", -0.25)],
    )
    def test_strategies(self, strategy, expected):
        faults = ByzantineFaults([1], strategy=strategy)
        (out,) = faults.apply([Message(1, 2, 0.25)], 1)
        assert out.payload == expected

    def test_silent(self):
        faults = ByzantineFaults([1], strategy="silent")
        out = faults.apply(broadcast_all([0.0, 1.0, 0.5]), 1)
        assert all(m.sender != 1 for m in out)
        assert len(out) == 4

    def test_random_is_bounded_and_reproducible(self):
        faults = ByzantineFaults([2], strategy="random")
        first = faults.apply([Message(2, 1, 0.0)], 4)[0].payload
        second = faults.apply([Message(2, 1, 0.0)], 4)[0].payload
        assert first == second
        assert -50.0 <= first <= 50.0

    def test_honest_senders_untouched(self):
        faults = ByzantineFaults([2], strategy="max_value")
        assert faults.apply([Message(1, 2, 0.3)], 1) == [Message(1, 2, 0.3)]

    def test_validation(self):
        with pytest.raises(ValueError, match="at least one node"):
            ByzantineFaults([])
        with pytest.raises(ValueError, match="Unknown Byzantine strategy"):
            ByzantineFaults([1], strategy="sneaky")


class TestNetworkPartition:
    def test_window(self):
        faults = NetworkPartition(partition_round=2, partition_duration=2, groups=[[1, 2], [3]])
        assert not faults.is_active(1)
        assert faults.is_active(2)
        assert faults.is_active(3)
        assert not faults.is_active(4)

    def test_blocks_cross_group(self):
        faults = NetworkPartition(partition_round=1, partition_duration=0, groups=[[1, 2], [3]])
        out = faults.apply(broadcast_all([0.0, 0.5, 1.0]), 10)
        assert {(m.sender, m.receiver) for m in out} == {(1, 2), (2, 1)}

    def test_validation(self):
        with pytest.raises(ValueError, match="at least 2 groups"):
            NetworkPartition(1, 0, [[1, 2]])
        with pytest.raises(ValueError, match="disjoint"):
            NetworkPartition(1, 0, [[1, 2], [2, 3]])


class TestMessageCorruption:
    def test_always_corrupt(self):
        faults = MessageCorruption(corruption_prob=1.0, corruption_type="flip_bits")
        (out,) = faults.apply([Message(1, 2, 1.0)], 1)
        assert out.payload == 0.0

    def test_never_corrupt(self):
        faults = MessageCorruption(corruption_prob=0.0, corruption_type="zero")
        messages = broadcast_all([0.3, 0.7])
        assert faults.apply(messages, 1) == messages

    def test_validation(self):
        with pytest.raises(ValueError, match="Unknown corruption type"):
            MessageCorruption(0.5, corruption_type="scramble")


class TestCompositeFaults:
    def test_combines_models(self):
        faults = CompositeFaults(
            [
                NetworkPartition(1, 0, [[1, 2], [3]]),
                ByzantineFaults([1], strategy="opposite"),
            ]
        )
        out = faults.apply(broadcast_all([0.5, 0.25, 1.0]), 1)
        assert out == [Message(1, 2, -0.5), Message(2, 1, 0.25)]
        assert faults.is_faulty(1, 1)
        assert not faults.is_faulty(3, 1)

    def test_requires_models(self):
        with pytest.raises(ValueError):
            CompositeFaults([])
