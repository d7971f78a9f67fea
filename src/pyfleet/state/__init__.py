"""State-change events and the bus that delivers them.

Every registry mutation and every lifecycle transition is published as
an event on a bus owned by the orchestration context; nothing else in
the agent listens for state changes any other way.
"""
