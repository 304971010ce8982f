"""
Clinic Workflow Engine

A configurable, entity-agnostic approval workflow engine with dynamic
approver resolution, delegation, escalation and hash-chained history.
"""

__version__ = "1.0.0"
