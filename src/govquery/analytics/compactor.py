"""
Evidence Compactor Component - Payload Bounding.

Everything exposed to the model passes through here. A payload is bounded
by depth, array length, string length and finally serialized size. Bounding
is pure and idempotent: bounding an already bounded payload with the same
limits returns it unchanged.
"""

import json
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)

TRUNCATED = "[truncated]"
ELLIPSIS = "..."
_SENTINEL_SIZE = len(json.dumps(TRUNCATED))


def _clamp(value: int, lo: int, hi: int) -> int:
    return min(max(int(value), lo), hi)


@dataclass(frozen=True)
class CompactionLimits:
    max_depth: int = 6
    max_array_elements: int = 20
    max_string_length: int = 500
    max_bytes: int = 12000

    def __post_init__(self):
        object.__setattr__(self, "max_depth", _clamp(self.max_depth, 1, 64))
        object.__setattr__(
            self, "max_array_elements", _clamp(self.max_array_elements, 1, 10_000)
        )
        object.__setattr__(
            self, "max_string_length", _clamp(self.max_string_length, 16, 100_000)
        )
        object.__setattr__(self, "max_bytes", _clamp(self.max_bytes, 1000, 200_000))


def to_jsonable(node: Any) -> Any:
    """Convert a payload into plain JSON types."""
    if node is None or isinstance(node, (bool, int, str)):
        return node
    if isinstance(node, float):
        return node if node == node and node not in (float("inf"), float("-inf")) else None
    if isinstance(node, Decimal):
        return float(node) if node.is_finite() else None
    if isinstance(node, Enum):
        return to_jsonable(node.value)
    if isinstance(node, (datetime, date, time)):
        return node.isoformat()
    if isinstance(node, UUID):
        return str(node)
    if isinstance(node, bytes):
        return node.hex()
    if isinstance(node, Mapping):
        return {str(k): to_jsonable(v) for k, v in node.items()}
    if isinstance(node, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in node]
    return str(node)


def serialized_size(node: Any) -> int:
    return len(
        json.dumps(node, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    )


class EvidenceCompactor:
    """
    Compactor that bounds JSON-like payloads.

    This component:
    1. Replaces containers at or below ``max_depth`` with a sentinel
    2. Cuts arrays to ``max_array_elements``
    3. Truncates strings to ``max_string_length`` with an ellipsis
    4. Prunes the largest substructures until the payload fits ``max_bytes``

    Strings under ``protected_keys`` are never shortened. Those values, and
    containers holding such a key, are pruned only when nothing else brings
    the payload under ``max_bytes``.
    """

    def __init__(
        self,
        limits: Optional[CompactionLimits] = None,
        protected_keys: Iterable[str] = (),
    ):
        self.limits = limits or CompactionLimits()
        self.protected_keys = frozenset(protected_keys)

    def bound(self, node: Any) -> tuple[Any, bool]:
        """
        Bound a payload.

        Args:
            node: Any JSON-like structure

        Returns:
            (bounded payload, whether anything was truncated)
        """
        plain = to_jsonable(node)
        state = {"truncated": False}
        bounded = self._walk(plain, 0, state)

        size = serialized_size(bounded)
        if size > self.limits.max_bytes:
            bounded = self._prune(bounded)
            state["truncated"] = True
            logger.info(
                "evidence_pruned",
                size_before=size,
                size_after=serialized_size(bounded),
                max_bytes=self.limits.max_bytes,
            )
        return bounded, state["truncated"]

    def _walk(self, node: Any, depth: int, state: dict, pinned: bool = False) -> Any:
        if isinstance(node, dict):
            if depth >= self.limits.max_depth:
                state["truncated"] = True
                return TRUNCATED
            return {
                k: self._walk(v, depth + 1, state, pinned or k in self.protected_keys)
                for k, v in node.items()
            }
        if isinstance(node, list):
            if depth >= self.limits.max_depth:
                state["truncated"] = True
                return TRUNCATED
            if len(node) > self.limits.max_array_elements:
                state["truncated"] = True
                node = node[: self.limits.max_array_elements]
            return [self._walk(v, depth + 1, state, pinned) for v in node]
        if (
            isinstance(node, str)
            and not pinned
            and len(node) > self.limits.max_string_length
        ):
            state["truncated"] = True
            keep = self.limits.max_string_length - len(ELLIPSIS)
            return node[:keep] + ELLIPSIS
        return node

    def _prune(self, root: Any) -> Any:
        """Replace the largest prunable nodes with the sentinel until it fits."""
        for keep in (self.protected_keys, frozenset()):
            root, size = self._prune_pass(root, keep)
            if size <= self.limits.max_bytes:
                return root
        return TRUNCATED

    def _prune_pass(self, root: Any, keep: frozenset) -> tuple[Any, int]:
        # breadth-first, so every child sits after its parent
        nodes = []
        queue = deque([(root, -1, None, False)])
        while queue:
            node, parent, key, pinned = queue.popleft()
            index = len(nodes)
            nodes.append((node, parent, key, pinned))
            if isinstance(node, dict):
                queue.extend(
                    (v, index, k, pinned or k in keep) for k, v in node.items()
                )
            elif isinstance(node, list):
                queue.extend((v, index, i, pinned) for i, v in enumerate(node))

        sizes = [0] * len(nodes)
        holds = [False] * len(nodes)
        for index in range(len(nodes) - 1, -1, -1):
            node, parent, key, _ = nodes[index]
            if isinstance(node, (dict, list)):
                sizes[index] += 2 + max(len(node) - 1, 0)
            else:
                sizes[index] = serialized_size(node)
            if parent < 0:
                continue
            sizes[parent] += sizes[index]
            if isinstance(nodes[parent][0], dict):
                sizes[parent] += serialized_size(key) + 1
                holds[parent] = holds[parent] or key in keep
            holds[parent] = holds[parent] or holds[index]

        candidates = sorted(
            (
                i
                for i in range(1, len(nodes))
                if not nodes[i][3] and not holds[i] and sizes[i] > _SENTINEL_SIZE
            ),
            key=lambda i: -sizes[i],
        )
        total = sizes[0]
        replaced = set()
        for index in candidates:
            if total <= self.limits.max_bytes:
                break
            parent = nodes[index][1]
            ancestor = parent
            while ancestor >= 0 and ancestor not in replaced:
                ancestor = nodes[ancestor][1]
            if ancestor >= 0:
                continue
            nodes[parent][0][nodes[index][2]] = TRUNCATED
            total -= sizes[index] - _SENTINEL_SIZE
            replaced.add(index)
        return root, total
