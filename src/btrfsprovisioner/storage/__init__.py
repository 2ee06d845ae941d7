"""Storage layer for the btrfs provisioner."""
