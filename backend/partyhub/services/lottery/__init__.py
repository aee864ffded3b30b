"""Lottery draws: eligibility, fair selection and draw history."""

from .draw import (
    EXCLUSION_POLICIES,
    DrawOutcome,
    EligibilityFact,
    LotteryEngine,
    PoolEntry,
    eligible_pool,
    pick_winner,
)
