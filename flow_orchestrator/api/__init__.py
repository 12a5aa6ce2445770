"""HTTP API for the flow orchestration engine."""
