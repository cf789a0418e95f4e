"""JSON schemas shipped with tiggerbridge."""
