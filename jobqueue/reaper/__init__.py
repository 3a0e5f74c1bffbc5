"""
Reaper module.
Reclaims stale jobs and purges expired results.
"""
