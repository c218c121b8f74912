"""
Job runners for the group charts feature.

`queue` holds the Redis job queue; the job modules consume it inside the
worker service.
"""
