"""trackpilot: imitation + reinforcement learning for a track-driving policy."""

__version__ = "0.1.0"
