"""Spending-event mining (budget archetypes)."""

from .miner import BudgetArchetype, EventClusterMiner, SpendingEvent, archetype_confidence

__all__ = ["BudgetArchetype", "EventClusterMiner", "SpendingEvent", "archetype_confidence"]
