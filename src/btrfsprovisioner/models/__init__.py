"""Models for the btrfs provisioner."""
