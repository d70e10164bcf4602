"""Blue/green deployment orchestrator for ECS services using TaskSets."""

__version__ = "0.1.0"
