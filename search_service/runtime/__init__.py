"""Engine runtime helpers: in-memory statistics and metrics facade."""
