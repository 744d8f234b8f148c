"""Programs the agent runs as hooks."""
