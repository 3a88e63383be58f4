"""
Rules package for the Access Service.

Contains door, principal, membership and access-rule models, the weekly
time-window matcher, and the evaluator that turns them into a verdict
with a step-by-step trace.
"""
