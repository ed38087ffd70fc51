"""
Entitlement State Machine
"""
from app.state_machine.states import SubscriptionState

__all__ = ["SubscriptionState"]
