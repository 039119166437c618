"""Persistence primitives shared by the job queue and the thread log."""
