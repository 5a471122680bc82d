"""Workflow definition and execution.

This package holds:
- typed node definitions and transitions
- the definition loader/validator
- the persisted run state and its lifecycle
- step executors and the engine that drives them
- the decision journal and the clarify sub-machine
"""

__all__: list[str] = []
