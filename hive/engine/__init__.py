"""Execution engine: the step loop and the pieces it composes.

Parsing, history budgeting, retry policy, approval gating and the
callback adapter are kept in separate modules so each can be tested on
its own, without a provider or an event loop.
"""
