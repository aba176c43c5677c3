"""
Approval Kernel - governed execution of critical actions.

A request for a sensitive action moves from creation through one or more
approval decisions to a terminal outcome, with:
- Pluggable resolution strategies (unanimous, majority, any-one, hierarchical, custom)
- Time-driven escalation and expiry
- One-hop delegation of approval authority
- Optimistic per-request concurrency control
- Asynchronous, at-least-once propagation of state changes
"""

__version__ = "0.1.0"
