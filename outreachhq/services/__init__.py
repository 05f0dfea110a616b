"""
External collaborators: generation service, delivery queue, recipient profiles.
"""
