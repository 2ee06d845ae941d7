"""Tests for storage class node assignment."""

from __future__ import annotations

from btrfsprovisioner.models.domain.storageclass import (
    DynamicAssignment,
    SingleNodeAssignment,
    parse_node_assignment,
)


def test_parse_node_assignment() -> None:
    assert parse_node_assignment("*") == DynamicAssignment()
    assert parse_node_assignment("n1") == SingleNodeAssignment(node_name="n1")
    assert parse_node_assignment("worker-*") == SingleNodeAssignment(
        node_name="worker-*"
    )
