"""Flow orchestration engine for robot conversation and automation flows."""

__version__ = "1.0.0"
