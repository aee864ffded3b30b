"""Live quiz services: timers, answer ledger, grading, round lifecycle, leaderboard.

Pure(ish) domain logic imported by HTTP routes and socket handlers, keeping
transport concerns separated from the round mechanics.
"""
