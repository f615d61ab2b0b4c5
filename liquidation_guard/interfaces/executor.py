"""Executor protocol — handoff of approved plans to an actioner."""
from typing import Protocol

from ..models import ExecutionReceipt, Plan, Position


class Executor(Protocol):
    """Abstract interface for submitting an approved plan for execution."""

    async def submit(self, plan: Plan, position: Position) -> ExecutionReceipt: ...
