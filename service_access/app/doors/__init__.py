"""
Door control package.

Runs unlock and lock requests through proximity validation, access
evaluation and the hardware controller, auditing each attempt.
"""
