"""Assignment of storage classes to the nodes that serve them."""

from __future__ import annotations

from dataclasses import dataclass

from ...constants import DYNAMIC_NODE_ASSIGNMENT

__all__ = [
    "DynamicAssignment",
    "NodeAssignment",
    "SingleNodeAssignment",
    "parse_node_assignment",
]


@dataclass(frozen=True)
class SingleNodeAssignment:
    """Claims against the storage class are served by one node."""

    node_name: str
    """Name of the node."""


@dataclass(frozen=True)
class DynamicAssignment:
    """Claims against the storage class may be served by any node."""


type NodeAssignment = SingleNodeAssignment | DynamicAssignment


def parse_node_assignment(value: str) -> NodeAssignment:
    """Interpret the value of the controlling node label.

    Parameters
    ----------
    value
        Label value, either a node name or the wildcard.

    Returns
    -------
    NodeAssignment
        Corresponding assignment.
    """
    if value == DYNAMIC_NODE_ASSIGNMENT:
        return DynamicAssignment()
    return SingleNodeAssignment(node_name=value)
