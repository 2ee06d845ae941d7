"""Kubernetes storage layer for the btrfs provisioner."""
