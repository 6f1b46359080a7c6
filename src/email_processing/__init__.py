"""
Email processing package: notification dedup and scheduling, the delayed
processing step, deletion sync, subscription management and the response
generator.
"""
