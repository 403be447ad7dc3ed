"""
Autonomy Control Plane

Safety-gated autonomous execution and rollback engine. Authorizes automated
actions, schedules approved changes in bounded batches, watches execution
against numeric safety thresholds, and compensates completed changes when
harm is detected.
"""

__version__ = "0.1.0"
