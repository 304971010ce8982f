"""
Step Completion and Rejection Policies

Completion: how a step's task rows combine into one step outcome
(sequential, sequential in turn, parallel ANY, parallel ALL).

Rejection: what a rejected step does to the instance. Terminating the
instance is the default; policies are looked up by name so definitions can
opt into a return-to-step behaviour.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence


class CompletionMode(Enum):
    """How the tasks of one step activation combine"""
    SEQUENTIAL = "sequential"  # single task (possibly pooled)
    ANY = "any"  # parallel, first decision wins
    IN_TURN = "in_turn"  # one task at a time, every candidate must approve
    ALL = "all"  # parallel, every task must decide

    @classmethod
    def for_flags(cls, allow_parallel_approval: bool, require_all_approvers: bool) -> 'CompletionMode':
        if require_all_approvers:
            return cls.ALL if allow_parallel_approval else cls.IN_TURN
        if allow_parallel_approval:
            return cls.ANY
        return cls.SEQUENTIAL


class StepOutcome(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


def evaluate_step(mode: CompletionMode, decisions: Sequence[str], live_count: int,
                  last_decision: Optional[str] = None, queued_count: int = 0) -> Optional[StepOutcome]:
    """
    Combine the task decisions of one step activation.

    Args:
        mode: completion mode of the step
        decisions: "approved"/"rejected" for every decided task in the activation
        live_count: tasks still waiting for a decision
        last_decision: decision that triggered the evaluation
        queued_count: candidates not yet handed a task (IN_TURN only)

    Returns:
        The step outcome, or None while the step is unresolved
    """
    if mode in (CompletionMode.SEQUENTIAL, CompletionMode.ANY):
        if last_decision is None:
            return None
        return StepOutcome(last_decision)

    if mode == CompletionMode.IN_TURN:
        if last_decision == StepOutcome.REJECTED.value:
            return StepOutcome.REJECTED
        if live_count > 0 or queued_count > 0 or not decisions:
            return None
        return StepOutcome.APPROVED

    if live_count > 0 or not decisions:
        return None
    if StepOutcome.REJECTED.value in decisions:
        return StepOutcome.REJECTED
    return StepOutcome.APPROVED


@dataclass
class RejectionOutcome:
    """Terminate the instance, or re-run the step with the given sequence"""
    terminate: bool
    return_to_sequence: Optional[int] = None


class RejectionPolicy(ABC):
    name: str = ""

    @abstractmethod
    def on_rejection(self, steps: List, rejected_step) -> RejectionOutcome:
        """Decide what happens after rejected_step is rejected"""
        pass


class TerminateOnRejection(RejectionPolicy):
    name = "terminate"

    def on_rejection(self, steps, rejected_step):
        return RejectionOutcome(terminate=True)


class ReturnToPreviousStep(RejectionPolicy):
    """Send the instance back one approval step; rejecting the first step terminates"""
    name = "return_to_previous"

    def on_rejection(self, steps, rejected_step):
        earlier = [
            s.sequence for s in steps
            if s.sequence < rejected_step.sequence and s.step_type.value == "approval"
        ]
        if not earlier:
            return RejectionOutcome(terminate=True)
        return RejectionOutcome(terminate=False, return_to_sequence=max(earlier))


class ReturnToConfiguredStep(RejectionPolicy):
    """Use the rejected step's return_to_sequence, terminating when it has none"""
    name = "return_to_step"

    def on_rejection(self, steps, rejected_step):
        target = rejected_step.return_to_sequence
        if target is None or target >= rejected_step.sequence:
            return RejectionOutcome(terminate=True)
        return RejectionOutcome(terminate=False, return_to_sequence=target)


_REJECTION_POLICIES: Dict[str, RejectionPolicy] = {}


def register_rejection_policy(policy: RejectionPolicy) -> None:
    if not policy.name:
        raise ValueError("Rejection policy must have a name")
    _REJECTION_POLICIES[policy.name] = policy


def get_rejection_policy(name: str) -> RejectionPolicy:
    try:
        return _REJECTION_POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown rejection policy: {name}")


def rejection_policy_names() -> List[str]:
    return sorted(_REJECTION_POLICIES)


for _policy in (TerminateOnRejection(), ReturnToPreviousStep(), ReturnToConfiguredStep()):
    register_rejection_policy(_policy)
