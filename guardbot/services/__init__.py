"""
Stateful trackers, caches and external collaborators.
"""
