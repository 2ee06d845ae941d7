"""Internal domain models for the btrfs provisioner."""
