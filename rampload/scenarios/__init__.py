"""Ready-made scenarios for the order API."""

from rampload.scenarios.orders import PRESETS, basic_scenario, spike_scenario, stress_scenario

__all__ = ["PRESETS", "basic_scenario", "spike_scenario", "stress_scenario"]
