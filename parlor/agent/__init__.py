"""Agent core: activation pipeline, context building and the tool loop."""
