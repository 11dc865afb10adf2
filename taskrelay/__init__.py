"""taskrelay: capability-matched task dispatch to a pool of remote agents.

A coordinator keeps a registry of connected agents and a store of tasks, offers
each task to the first available agent whose capabilities cover it, and tracks
the task through acknowledgment and progress updates, reassigning it when an
agent rejects it or disconnects.
"""

__version__ = "0.1.0"
