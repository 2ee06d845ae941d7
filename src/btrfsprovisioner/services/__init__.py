"""Service layer for the btrfs provisioner."""
