"""
Communication topologies.

A topology restricts which (sender, receiver) pairs may exchange messages at
all. The engine drops messages between non-neighbours before any delivery
model runs. Process ids are 1-based.
"""

from abc import ABC, abstractmethod
from collections import deque

import numpy as np


class Topology(ABC):
    """Abstract base class for communication graphs."""

    @abstractmethod
    def neighbors(self, node: int, n: int) -> set[int]:
        """Processes that `node` can send to in a system of n processes."""
        pass

    def can_communicate(self, sender: int, receiver: int, n: int) -> bool:
        return receiver in self.neighbors(sender, n)

    def diameter(self, n: int) -> int:
        """Longest shortest path, by BFS from every node.

        Returns:
            The diameter, or -1 if some node cannot reach another.
        """
        longest = 0
        for start in range(1, n + 1):
            dist = {start: 0}
            queue = deque([start])
            while queue:
                node = queue.popleft()
                for nbr in self.neighbors(node, n):
                    if nbr not in dist:
                        dist[nbr] = dist[node] + 1
                        queue.append(nbr)
            if len(dist) < n:
                return -1
            longest = max(longest, max(dist.values()))
        return longest


class CompleteGraph(Topology):
    """Every process can reach every other process."""

    def neighbors(self, node: int, n: int) -> set[int]:
        return {i for i in range(1, n + 1) if i != node}

    def diameter(self, n: int) -> int:
        return 1 if n > 1 else 0

    def __repr__(self) -> str:
        return "CompleteGraph()"


class Ring(Topology):
    """Each process talks to its predecessor and successor."""

    def neighbors(self, node: int, n: int) -> set[int]:
        if n == 1:
            return set()
        prev = n if node == 1 else node - 1
        nxt = 1 if node == n else node + 1
        return {prev, nxt}

    def diameter(self, n: int) -> int:
        return n // 2

    def __repr__(self) -> str:
        return "Ring()"


class Star(Topology):
    """Process 1 is the hub; all other processes only talk to the hub."""

    def neighbors(self, node: int, n: int) -> set[int]:
        if node == 1:
            return set(range(2, n + 1))
        return {1}

    def diameter(self, n: int) -> int:
        return min(n - 1, 2)

    def __repr__(self) -> str:
        return "Star()"


class Grid(Topology):
    """Row-major rows x cols grid with 4-neighbourhood."""

    def __init__(self, rows: int, cols: int):
        if rows < 1 or cols < 1:
            raise ValueError(f"Grid dimensions must be positive, got {rows}x{cols}")
        self.rows = rows
        self.cols = cols

    def _check(self, n: int) -> None:
        if n != self.rows * self.cols:
            raise ValueError(f"Grid {self.rows}x{self.cols} does not match {n} processes")

    def neighbors(self, node: int, n: int) -> set[int]:
        self._check(n)
        row, col = divmod(node - 1, self.cols)
        nbrs = set()
        if row > 0:
            nbrs.add(node - self.cols)
        if row < self.rows - 1:
            nbrs.add(node + self.cols)
        if col > 0:
            nbrs.add(node - 1)
        if col < self.cols - 1:
            nbrs.add(node + 1)
        return nbrs

    def diameter(self, n: int) -> int:
        self._check(n)
        return (self.rows - 1) + (self.cols - 1)

    def __repr__(self) -> str:
        return f"Grid(rows={self.rows}, cols={self.cols})"


class RandomGraph(Topology):
    """Directed Erdős–Rényi graph, reproducible from a seed.

    Args:
        edge_prob: Probability of each directed edge.
        seed: Seed; each node's out-edges come from seed + node.
    """

    def __init__(self, edge_prob: float, seed: int = 0):
        if not 0.0 <= edge_prob <= 1.0:
            raise ValueError(f"edge_prob must be in [0, 1], got {edge_prob}")
        self.edge_prob = edge_prob
        self.seed = seed

    def neighbors(self, node: int, n: int) -> set[int]:
        rng = np.random.default_rng(self.seed + node)
        draws = rng.random(n)
        return {i for i in range(1, n + 1) if i != node and draws[i - 1] < self.edge_prob}

    def __repr__(self) -> str:
        return f"RandomGraph(edge_prob={self.edge_prob}, seed={self.seed})"


class KRegular(Topology):
    """Circulant graph linking each node to its k nearest ring positions."""

    def __init__(self, k: int):
        if k < 0:
            raise ValueError(f"k must be non-negative, got {k}")
        self.k = k

    def neighbors(self, node: int, n: int) -> set[int]:
        if self.k >= n:
            raise ValueError(f"k must be less than the number of processes ({n}), got {self.k}")
        nbrs: list[int] = []
        offset = 1
        while len(nbrs) < self.k:
            for candidate in ((node - 1 - offset) % n + 1, (node - 1 + offset) % n + 1):
                if candidate not in nbrs and candidate != node and len(nbrs) < self.k:
                    nbrs.append(candidate)
            offset += 1
        return set(nbrs)

    def __repr__(self) -> str:
        return f"KRegular(k={self.k})"


class BipartiteGraph(Topology):
    """Processes 1..left_size talk only to the right partition and vice versa."""

    def __init__(self, left_size: int, right_size: int):
        if left_size < 1 or right_size < 1:
            raise ValueError("Both partitions must be non-empty")
        self.left_size = left_size
        self.right_size = right_size

    def neighbors(self, node: int, n: int) -> set[int]:
        if n != self.left_size + self.right_size:
            raise ValueError(f"Bipartite sizes do not add up to {n} processes")
        if node <= self.left_size:
            return set(range(self.left_size + 1, n + 1))
        return set(range(1, self.left_size + 1))

    def __repr__(self) -> str:
        return f"BipartiteGraph(left_size={self.left_size}, right_size={self.right_size})"


class CustomTopology(Topology):
    """Arbitrary directed graph from a boolean adjacency matrix.

    Args:
        adjacency: adjacency[i][j] is True when process i+1 can send to j+1.
    """

    def __init__(self, adjacency):
        matrix = np.asarray(adjacency, dtype=bool)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ValueError(f"Adjacency must be a square matrix, got shape {matrix.shape}")
        self.adjacency = matrix

    def neighbors(self, node: int, n: int) -> set[int]:
        if self.adjacency.shape[0] != n:
            raise ValueError(f"Adjacency matrix size {self.adjacency.shape[0]} does not match {n} processes")
        return {int(j) + 1 for j in np.flatnonzero(self.adjacency[node - 1]) if j != node - 1}

    def __repr__(self) -> str:
        return f"CustomTopology(n={self.adjacency.shape[0]})"
