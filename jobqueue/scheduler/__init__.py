"""
Scheduling module.
Contains the due-time ordered ready queue and recurrence rules.
"""
