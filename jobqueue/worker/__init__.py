"""
Worker module.
Contains the dispatcher, executors, retry policy and rate limiting.
"""
