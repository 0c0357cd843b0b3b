"""Read-only view of the git repository (VersionControl, snapshots)."""
