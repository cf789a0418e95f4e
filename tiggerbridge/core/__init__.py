"""Session, bridge and configuration core."""
