"""Activation persistence."""

from parlor.session.activations import Activation, ActivationStore, ActivationTrigger, Completion

__all__ = ["Activation", "ActivationStore", "ActivationTrigger", "Completion"]
